"""Port allocation and token generation for spawned services."""

from __future__ import annotations

import random
import secrets
import socket
import threading

_issued_ports: set[int] = set()
_issued_lock = threading.Lock()


def port_available(port: int, host: str = "localhost") -> bool:
    """Return True if *port* can currently be bound on *host*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def available_port(start: int = 1025, end: int = 65535, attempts: int = 1000) -> int:
    """Pick a random free port in ``[start, end]``.

    Ports handed out earlier in this process are never returned again, so two
    services spawned back to back cannot be given the same port before either
    has bound it.

    Raises:
        RuntimeError: If no free port was found after *attempts* tries.
    """
    for _ in range(attempts):
        port = random.randint(start, end)
        with _issued_lock:
            if port in _issued_ports:
                continue
        if not port_available(port):
            continue
        with _issued_lock:
            if port in _issued_ports:
                continue
            _issued_ports.add(port)
        return port
    raise RuntimeError(f"No available port in range {start}-{end}")


def generate_token() -> str:
    """Return a fresh random authentication token."""
    return secrets.token_hex(16)
