"""afpack - pack large dependency directories into mounted disk images."""

__version__ = "0.1.0"
