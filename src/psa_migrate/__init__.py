"""PSA Migration Tool

Moves contacts and configuration items between companies and transfers a
resource's open work to another resource, through the PSA REST API.
"""

__version__ = '0.1.0'

from .migration import MigrationEngine

__all__ = ['MigrationEngine', '__version__']
