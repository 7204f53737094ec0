"""buildcontrol - Publish build output to git branches.

This package commits a built artifact directory onto a branch of one or more
remote git repositories and pushes it, as an idempotent deploy step of a
larger build pipeline.
"""

__version__ = "0.1.0"
