"""
Fleetstat - Remote diagnostic snapshot collection over SSH.

Runs a configurable set of remote commands against a fleet of hosts,
either continuously on a fixed interval or once as a named collection,
and stores each result as a timestamped JSON snapshot.
"""

__version__ = "1.0.0"
__author__ = "Fleetstat Developers"

__all__ = ["__version__"]
