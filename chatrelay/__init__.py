"""Line-based chat relay daemon."""

__version__ = "0.1.0"
