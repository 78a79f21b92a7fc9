"""
API Client for the Controller

Handles HTTP communication with the controller. The controller address is
resolved through a DiscoveryClient on every request, and all requests go
through one shared requests.Session so the polling and heartbeat threads
reuse the same connection pool.

Failures never raise: they come back as an unsuccessful APIResponse.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

import requests

from . import __version__
from .discovery import DiscoveryClient


@dataclass
class APIResponse:
    """Wrapper for API responses."""
    success: bool
    status_code: int
    data: Optional[Any] = None
    error: Optional[str] = None

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class ControllerAPIClient:
    """HTTP client for the controller API."""

    def __init__(self, discovery: DiscoveryClient, service_name: str = 'controller',
                 client_name: str = 'worker', timeout: int = 30,
                 session: Optional[requests.Session] = None):
        """
        Initialize API client.

        Args:
            discovery: Resolves service_name to a base URL
            service_name: Logical name of the controller service
            client_name: Name this client identifies itself with
            timeout: Request timeout in seconds
            session: Session to reuse (a new one is created otherwise)
        """
        self.discovery = discovery
        self.service_name = service_name
        self.client_name = client_name
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['User-Agent'] = f'jobworker/{__version__} ({client_name})'

    def get_api_url(self, endpoint: str) -> Optional[str]:
        """
        Build the absolute URL of an endpoint.

        Returns:
            URL string, or None if the controller cannot be resolved
        """
        base_url = self.discovery.resolve(self.service_name)
        if not base_url:
            return None
        return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def _request(self, method: str, endpoint: str, **kwargs) -> APIResponse:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint (e.g., /api/v1/agents)
            **kwargs: Additional arguments for requests

        Returns:
            APIResponse with success status and data/error
        """
        kwargs.setdefault('timeout', self.timeout)

        try:
            url = self.get_api_url(endpoint)
            if url is None:
                return APIResponse(
                    success=False,
                    status_code=0,
                    error=f"Service '{self.service_name}' could not be resolved"
                )

            response = self.session.request(method, url, **kwargs)

            # Try to parse JSON response
            try:
                data = response.json()
            except (json.JSONDecodeError, ValueError):
                data = None

            if response.ok:
                return APIResponse(
                    success=True,
                    status_code=response.status_code,
                    data=data
                )
            else:
                error_msg = data.get('error') if isinstance(data, dict) else response.text
                return APIResponse(
                    success=False,
                    status_code=response.status_code,
                    data=data,
                    error=error_msg
                )

        except requests.exceptions.ConnectionError as e:
            return APIResponse(
                success=False,
                status_code=0,
                error=f"Connection error: {str(e)}"
            )
        except requests.exceptions.Timeout:
            return APIResponse(
                success=False,
                status_code=0,
                error="Request timed out"
            )
        except requests.exceptions.RequestException as e:
            return APIResponse(
                success=False,
                status_code=0,
                error=f"Request failed: {str(e)}"
            )

    def get(self, endpoint: str, params: Optional[dict] = None) -> APIResponse:
        return self._request('GET', endpoint, params=params)

    def post(self, endpoint: str, body: Any = None) -> APIResponse:
        return self._request('POST', endpoint, json=body)

    def put(self, endpoint: str, body: Any = None, params: Optional[dict] = None) -> APIResponse:
        if body is None:
            return self._request('PUT', endpoint, params=params)
        return self._request('PUT', endpoint, json=body, params=params)

    def close(self):
        """Release pooled connections."""
        self.session.close()
