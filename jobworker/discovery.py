"""
Service Discovery

Maps a logical service name (e.g. 'controller') to a base URL. The
transport client only depends on the DiscoveryClient interface, so a
fixed address and a registry lookup are interchangeable.

Usage:
    from jobworker.discovery import get_discovery_client
    discovery = get_discovery_client(config)
    base_url = discovery.resolve('controller')
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class DiscoveryClient(ABC):
    """Resolves logical service names to reachable base URLs."""

    @abstractmethod
    def resolve(self, service_name: str) -> Optional[str]:
        """
        Resolve a service to a base URL.

        Args:
            service_name: Logical name of the service

        Returns:
            Base URL without trailing slash, or None if unresolvable
        """
        pass


class StaticDiscoveryClient(DiscoveryClient):
    """Fixed addresses, for local runs and single-host deployments."""

    def __init__(self, default_url: Optional[str] = None,
                 services: Optional[Dict[str, str]] = None):
        """
        Args:
            default_url: Address returned for any service not listed in services
            services: Explicit service name to address mapping
        """
        self.default_url = default_url.rstrip('/') if default_url else None
        self.services = {name: url.rstrip('/') for name, url in (services or {}).items()}

    def resolve(self, service_name: str) -> Optional[str]:
        return self.services.get(service_name, self.default_url)


class RegistryDiscoveryClient(DiscoveryClient):
    """
    Resolves services through a Consul-style registry.

    Queries /v1/health/service/<name>?passing=true and rotates across the
    healthy instances. Results are cached for cache_ttl seconds; the cache
    is shared by the polling and heartbeat threads.
    """

    def __init__(self, registry_url: str, scheme: str = 'http',
                 cache_ttl: float = 30.0, timeout: int = 5):
        self.registry_url = registry_url.rstrip('/')
        self.scheme = scheme
        self.cache_ttl = cache_ttl
        self.timeout = timeout

        self._cache: Dict[str, List[str]] = {}
        self._fetched_at: Dict[str, float] = {}
        self._cursor: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _lookup(self, service_name: str) -> List[str]:
        url = f"{self.registry_url}/v1/health/service/{service_name}"
        try:
            response = requests.get(url, params={'passing': 'true'}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Registry lookup for '{service_name}' failed: {e}")
            return []

        if not response.ok:
            logger.warning(f"Registry lookup for '{service_name}' returned {response.status_code}")
            return []

        try:
            entries = response.json()
        except ValueError as e:
            logger.warning(f"Registry lookup for '{service_name}' returned an invalid body: {e}")
            return []

        if not isinstance(entries, list):
            logger.warning(f"Registry lookup for '{service_name}' returned an unexpected body")
            return []

        addresses = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            service = entry.get('Service') or {}
            host = service.get('Address') or (entry.get('Node') or {}).get('Address')
            port = service.get('Port')
            if host and port:
                addresses.append(f"{self.scheme}://{host}:{port}")
        return addresses

    def resolve(self, service_name: str) -> Optional[str]:
        with self._lock:
            fresh = time.monotonic() - self._fetched_at.get(service_name, float('-inf')) < self.cache_ttl
            if not fresh or not self._cache.get(service_name):
                self._cache[service_name] = self._lookup(service_name)
                self._fetched_at[service_name] = time.monotonic()

            instances = self._cache[service_name]
            if not instances:
                return None

            cursor = self._cursor.get(service_name, 0)
            self._cursor[service_name] = cursor + 1
            return instances[cursor % len(instances)]

    def invalidate(self, service_name: str):
        """Force the next resolve() to query the registry again."""
        with self._lock:
            self._fetched_at.pop(service_name, None)


def get_discovery_client(config) -> DiscoveryClient:
    """
    Factory function to get the discovery client for a configuration.

    A configured registry URL takes precedence over a static controller URL.
    """
    if config.discovery_registry_url:
        return RegistryDiscoveryClient(config.discovery_registry_url)
    return StaticDiscoveryClient(services={config.controller_service: config.controller_url})


__all__ = ['DiscoveryClient', 'StaticDiscoveryClient', 'RegistryDiscoveryClient', 'get_discovery_client']
