"""planexec: supervised execution of coding-agent subprocesses for plan runs."""

__version__ = "0.3.0"
