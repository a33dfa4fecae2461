"""
core — configuration, structured logging, error kinds and the model registry.
"""
