"""Cloud storage token lifecycle and upload resilience engine for Upload Drive-in."""

__version__ = "0.1.0"
