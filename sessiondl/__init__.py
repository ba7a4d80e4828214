"""SessionDL - browse browser downloads grouped by the URN in their filenames."""

__version__ = "0.1.0"
