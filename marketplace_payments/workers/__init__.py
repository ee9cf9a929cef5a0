"""Background workers."""
from .processing_sweeper import ProcessingSweeper

__all__ = ["ProcessingSweeper"]
