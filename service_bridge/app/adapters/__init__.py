"""
Adapters package for the bridge gate.

Contains HTTP client wrappers for collaborators outside this service. Keep
adapters thin and side-effect free outside of explicit calls.
"""

from .introspection_client import IntrospectionClient

__all__ = [
    "IntrospectionClient",
]
