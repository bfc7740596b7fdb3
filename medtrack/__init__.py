# medtrack/__init__.py
# Local medication tracking: encrypted key-value persistence and dose scheduling.

__version__ = "1.0.0"
