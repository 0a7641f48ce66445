"""BeautyBook — booking lifecycle and escrow engine for a beauty-services marketplace."""

__version__ = "0.1.0"
