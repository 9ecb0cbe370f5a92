"""Utility modules for Host Hardener."""

from host_hardener.utils.command import CommandRunner
from host_hardener.utils.file import FileManager
from host_hardener.utils.validation import Validator

__all__ = ["CommandRunner", "FileManager", "Validator"]
