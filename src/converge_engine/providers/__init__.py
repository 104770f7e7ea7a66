"""
converge-engine: providers

File: src/converge_engine/providers/__init__.py

Purpose
- Provider interface, kind-keyed registry, and the bundled providers.
"""

from converge_engine.providers.base import (
    BaseProvider,
    ProviderProtocol,
    ProviderRegistry,
    SyncProvider,
)
from converge_engine.providers.local_file import LocalFileProvider
from converge_engine.providers.simulated import (
    FileProvider,
    HostEvent,
    PackageProvider,
    ServiceProvider,
    SimulatedHost,
    SimulatedProvider,
    simulated_providers,
)

__all__ = [
    "BaseProvider",
    "FileProvider",
    "HostEvent",
    "LocalFileProvider",
    "PackageProvider",
    "ProviderProtocol",
    "ProviderRegistry",
    "ServiceProvider",
    "SimulatedHost",
    "SimulatedProvider",
    "SyncProvider",
    "simulated_providers",
]
