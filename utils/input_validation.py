"""
Input Validation Utilities
Syntactic checks for transaction references and payout addresses per network
"""

import re
import logging
from typing import Optional

from services.escrow_errors import ValidationError

logger = logging.getLogger(__name__)

EVM_NETWORKS = frozenset({"BSC", "ETH", "SEPOLIA", "POLYGON"})


class InputValidator:
    """Network-aware input validation"""

    EVM_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
    EVM_TX_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

    # Explorer links pasted instead of bare hashes
    EXPLORER_TX_PATTERNS = [
        re.compile(r"bscscan\.com/tx/(0x[a-fA-F0-9]{64})", re.IGNORECASE),
        re.compile(r"etherscan\.io/tx/(0x[a-fA-F0-9]{64})", re.IGNORECASE),
        re.compile(r"polygonscan\.com/tx/(0x[a-fA-F0-9]{64})", re.IGNORECASE),
    ]

    @classmethod
    def normalize_network(cls, network: Optional[str]) -> str:
        value = (network or "").strip().upper()
        if not value:
            raise ValidationError("Network is required", user_message="❌ Please choose a network first.")
        return value

    @classmethod
    def extract_tx_reference(cls, text: str) -> str:
        """Pull a bare hash out of an explorer URL, otherwise return the stripped text"""
        text = (text or "").strip()
        for pattern in cls.EXPLORER_TX_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(1)
        return text

    @classmethod
    def validate_tx_reference(cls, reference: str, network: str) -> str:
        """Validate a transaction reference for the network and return its canonical form"""
        network = cls.normalize_network(network)
        reference = cls.extract_tx_reference(reference)
        if not reference:
            raise ValidationError("Empty transaction reference", user_message="❌ Please send the transaction hash.")

        if network in EVM_NETWORKS:
            if not cls.EVM_TX_PATTERN.match(reference):
                raise ValidationError(
                    f"Malformed {network} transaction hash: {reference[:80]!r}",
                    user_message="❌ Invalid transaction hash. It must start with 0x followed by 64 hex characters.",
                )
            return reference.lower()

        raise ValidationError(
            f"Unsupported network for transaction references: {network}",
            user_message=f"❌ {network} is not supported.",
        )

    @classmethod
    def validate_address(cls, address: str, network: str) -> str:
        """Validate a payout address format for the network"""
        network = cls.normalize_network(network)
        address = (address or "").strip()
        if not address:
            raise ValidationError("Address cannot be empty", user_message="❌ Please send a wallet address.")

        if network in EVM_NETWORKS:
            if not cls.EVM_ADDRESS_PATTERN.match(address):
                raise ValidationError(
                    f"Invalid {network} address: {address!r}",
                    user_message="❌ Invalid address format. Address must start with 0x and be 42 characters.",
                )
            return address

        raise ValidationError(
            f"Unsupported network for addresses: {network}",
            user_message=f"❌ {network} is not supported.",
        )

    @classmethod
    def same_address(cls, left: Optional[str], right: Optional[str]) -> bool:
        """Case-insensitive address comparison (EVM checksums vary in case)"""
        if not left or not right:
            return False
        return left.strip().lower() == right.strip().lower()
