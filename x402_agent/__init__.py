"""
x402 Agent
==========
A conversational agent that runs paid identity-validation tools behind an
x402 payment gate and notarizes results on an ERC-8004 validation registry.

Usage:
    from x402_agent.config import Settings
    from x402_agent.services import build_services
"""

__version__ = "0.1.0"
