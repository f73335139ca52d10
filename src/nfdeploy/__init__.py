"""Build-time verification that nanoFramework assemblies can run on their deployment targets."""

__version__ = "0.1.0"
