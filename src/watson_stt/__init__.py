"""
watson-stt-stream: streaming client for the Watson Speech to Text WebSocket interface.
"""

__version__ = "0.1.0"
