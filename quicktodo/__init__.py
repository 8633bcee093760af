"""quicktodo: natural-language task capture with local/remote sync."""

__version__ = '0.1.0'
