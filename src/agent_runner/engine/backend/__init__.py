"""Model backend implementations."""

from agent_runner.engine.backend.base import ModelBackend
from agent_runner.engine.backend.echo_backend import EchoBackend

__all__ = [
    "EchoBackend",
    "ModelBackend",
]
