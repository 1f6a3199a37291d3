"""Browser IDE backend: per-project sandboxed files, live process runs, remote backup."""

__version__ = "0.1.0"
