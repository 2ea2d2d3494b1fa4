"""datavault: dataset version control and content storage engine."""

from __future__ import annotations

from datavault.exceptions import DatavaultError
from datavault.service import DatasetVersioningService

__version__ = "0.1.0"

__all__ = [
    "DatasetVersioningService",
    "DatavaultError",
    "__version__",
]
