"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings and the
operations facade, avoiding global state and enabling dependency injection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from .operations import Operations, OpsConfig
from .settings import Settings, create_settings_from_env


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Holds settings loaded once per command execution and, in tests, the
    httpx transport that routes storage and signing calls to fakes.
    """
    settings: Settings
    http_transport: Optional[httpx.AsyncBaseTransport] = None

    @classmethod
    def from_env(cls) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        settings = create_settings_from_env()
        return cls(settings=settings)

    def operations(self, config: OpsConfig) -> Operations:
        return Operations(config, self.settings, http_transport=self.http_transport)
