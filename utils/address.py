"""
Address Validation
==================
Checks that a string is a well-formed Solana address before we spend
any RPC calls on it. A Solana address is 32 bytes encoded as base58
(usually 43-44 characters).
"""

from solders.pubkey import Pubkey


def is_valid_address(address: str) -> bool:
    """True if `address` parses as a 32-byte base58 public key."""
    if not isinstance(address, str) or not 32 <= len(address) <= 44:
        return False
    try:
        Pubkey.from_string(address)
    except (ValueError, TypeError):
        return False
    return True
