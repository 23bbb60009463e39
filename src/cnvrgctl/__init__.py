"""
cnvrgctl - Backup and restore tooling for cnvrg.io on Kubernetes
"""

__version__ = "0.3.0"

from .core import BackupOrchestrator
from .errors import CnvrgctlError

__all__ = ["BackupOrchestrator", "CnvrgctlError"]
