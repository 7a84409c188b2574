"""CAIRN — modular, annotation-driven verifier for storage contracts"""

__version__ = "0.1.0"
