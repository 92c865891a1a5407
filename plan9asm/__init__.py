"""Parse Go/Plan 9 assembly and translate a subset of it into textual LLVM IR."""

__version__ = "0.1.0"