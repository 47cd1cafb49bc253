"""classcam: classroom attendance by face recognition."""

__version__ = "0.3.0"
