"""convdiag: Calibrate optimizer convergence warnings from consensus of parameter estimates."""
from importlib.metadata import version

__all__ = ["__version__"]

try:
    __version__ = version("convdiag")
except Exception:  # pragma: no cover - package metadata not available in dev
    __version__ = "0.1.0"
