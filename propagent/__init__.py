"""
propagent - Policy-governed automation for residential property management

Runs maintenance, tenant communication, compliance and SLA workflows on a
shared policy engine, run ledger and agent memory.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["PropagentConfig", "load_config", "get_propagent_home"]

from .config import PropagentConfig, load_config, get_propagent_home
