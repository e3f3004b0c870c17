"""
Shared package for authflow.

This package contains the data models, validation schemas, exceptions and
logging configuration used across the authentication client.
"""
