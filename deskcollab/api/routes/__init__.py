from . import realtime

__all__ = [
    "realtime",
]
