"""Command-line tools for the token vending machine.

`tvm` is a reference client for the signed-request protocol; `tvm-admin`
inspects and prunes the users and devices domains. Both print JSON on stdout
and Rich-formatted errors on stderr.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
