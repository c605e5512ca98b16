"""
Decentralized Identity Registry

Identity, credential and verification-request registry with owner-managed
verifier authorization, served over HTTP and deployable to EVM networks.

Version: 1.0.0
"""

__version__ = "1.0.0"
