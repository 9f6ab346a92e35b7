"""Atelier: masked generative edits for fashion-commerce imagery."""

__version__ = "0.3.0"
