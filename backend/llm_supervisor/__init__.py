"""Supervisor for a local llama.cpp inference server."""

__version__ = "0.4.0"
