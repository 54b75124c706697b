"""app-operator - AppDeployment reconciler and watch-fed status cache."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("app-operator")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
