"""
chainShell Controller Configuration
"""

import argparse
from dataclasses import dataclass
from typing import Optional


@dataclass
class ControllerConfig:
    rsa_bits: int = 2048
    max_agents: Optional[int] = None
    agent_ttl: Optional[float] = None
    history_size: int = 100
    poll_interval: float = 0.5
    initial_nonce: int = 0

    def __post_init__(self):
        if self.rsa_bits < 1024:
            raise ValueError("RSA key must be at least 1024 bits")
        if self.max_agents is not None and self.max_agents < 1:
            raise ValueError("max_agents must be at least 1")
        if self.agent_ttl is not None and self.agent_ttl <= 0:
            raise ValueError("agent_ttl must be positive")
        if self.history_size < 1:
            raise ValueError("history_size must be at least 1")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.initial_nonce < 0:
            raise ValueError("initial_nonce must not be negative")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "ControllerConfig":
        """Build a config from parsed command line arguments."""
        return cls(
            rsa_bits=args.rsa_bits,
            max_agents=args.max_agents,
            agent_ttl=args.agent_ttl,
            initial_nonce=args.nonce,
        )
