"""
emulbot - an IRC chat participant backed by a tool-using language model
"""

__version__ = "0.1.0"
__logo__ = "🐰"
