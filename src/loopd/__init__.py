from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("loopd")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"
