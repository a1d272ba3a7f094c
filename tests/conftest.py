"""
Pytest configuration for chainShell tests.

This file provides fixtures and utilities for testing.
"""
import sys
import time
from pathlib import Path

import pytest

# Ensure controller and agent packages are importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from controller import crypto
from controller.registry import SessionRegistry
from controller.transport import MemoryLedger


@pytest.fixture(scope="session")
def rsa_key():
    """Small RSA keypair, generated once for the whole run."""
    return crypto.generate_asymmetric_keys(1024)


@pytest.fixture
def session_key():
    return crypto.generate_session_key()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def ledger():
    return MemoryLedger(poll_interval=0.02)


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it is truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())
