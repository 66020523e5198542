"""Invoice processing pipeline Lambdas."""

__version__ = "0.1.0"
