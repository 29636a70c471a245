"""Route tracing over ICMP, TCP and UDP with reserved-range labelling, MPLS decoding and path reports."""

__version__ = "1.3.0"