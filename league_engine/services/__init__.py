"""
Services package for the league engine.

Only the base class is exported here; the operations layer imports service
modules directly, so importing the package must not pull in the pipeline.
"""

from .base import BaseService

__all__ = ['BaseService']
