"""
Unit tests for service discovery.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

import requests

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jobworker.api_client import ControllerAPIClient
from jobworker.channels import ExecutionChannel
from jobworker.config import WorkerConfig
from jobworker.discovery import (
    RegistryDiscoveryClient,
    StaticDiscoveryClient,
    get_discovery_client,
)
from jobworker.models import WorkerHeartbeat


def _registry_response(entries, ok=True, status_code=200):
    response = Mock()
    response.ok = ok
    response.status_code = status_code
    response.json.return_value = entries
    return response


class TestStaticDiscovery(unittest.TestCase):

    def test_named_service(self):
        client = StaticDiscoveryClient(services={'controller': 'http://localhost:8080/'})
        self.assertEqual(client.resolve('controller'), 'http://localhost:8080')
        self.assertIsNone(client.resolve('other'))

    def test_default_url(self):
        client = StaticDiscoveryClient(default_url='http://controller:8080')
        self.assertEqual(client.resolve('anything'), 'http://controller:8080')


class TestRegistryDiscovery(unittest.TestCase):

    def setUp(self):
        self.client = RegistryDiscoveryClient('http://consul:8500/', cache_ttl=60)

    @patch('jobworker.discovery.requests.get')
    def test_resolve_rotates_healthy_instances(self, mock_get):
        mock_get.return_value = _registry_response([
            {'Node': {'Address': '10.0.0.1'}, 'Service': {'Address': '', 'Port': 8080}},
            {'Node': {'Address': '10.0.0.9'}, 'Service': {'Address': '10.0.0.2', 'Port': 8081}},
        ])

        first = self.client.resolve('controller')
        second = self.client.resolve('controller')
        third = self.client.resolve('controller')

        self.assertEqual(first, 'http://10.0.0.1:8080')
        self.assertEqual(second, 'http://10.0.0.2:8081')
        self.assertEqual(third, first)
        # Cached after the first lookup
        mock_get.assert_called_once_with(
            'http://consul:8500/v1/health/service/controller',
            params={'passing': 'true'},
            timeout=5
        )

    @patch('jobworker.discovery.requests.get')
    def test_registry_unreachable(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError('refused')
        self.assertIsNone(self.client.resolve('controller'))

    @patch('jobworker.discovery.requests.get')
    def test_no_instances_retried_on_next_resolve(self, mock_get):
        mock_get.side_effect = [
            _registry_response([]),
            _registry_response([{'Service': {'Address': '10.0.0.3', 'Port': 9000}}]),
        ]

        self.assertIsNone(self.client.resolve('controller'))
        self.assertEqual(self.client.resolve('controller'), 'http://10.0.0.3:9000')

    @patch('jobworker.discovery.requests.get')
    def test_invalidate_forces_lookup(self, mock_get):
        mock_get.return_value = _registry_response([{'Service': {'Address': 'a', 'Port': 1}}])

        self.client.resolve('controller')
        self.client.invalidate('controller')
        self.client.resolve('controller')

        self.assertEqual(mock_get.call_count, 2)

    @patch('jobworker.discovery.requests.get')
    def test_registry_non_json_body(self, mock_get):
        response = _registry_response(None)
        response.json.side_effect = ValueError('Expecting value: line 1 column 1 (char 0)')
        mock_get.return_value = response

        self.assertIsNone(self.client.resolve('controller'))

    @patch('jobworker.discovery.requests.get')
    def test_registry_unexpected_entries_are_skipped(self, mock_get):
        mock_get.return_value = _registry_response([
            'garbage',
            None,
            {'Service': {'Address': '10.0.0.4', 'Port': 8080}},
        ])
        self.assertEqual(self.client.resolve('controller'), 'http://10.0.0.4:8080')

    @patch('jobworker.discovery.requests.get')
    def test_registry_body_not_a_list(self, mock_get):
        mock_get.return_value = _registry_response({'error': 'gateway'})
        self.assertIsNone(self.client.resolve('controller'))

    @patch('jobworker.discovery.requests.get')
    def test_broken_registry_makes_channel_result_absent(self, mock_get):
        response = _registry_response(None)
        response.json.side_effect = ValueError('Expecting value: line 1 column 1 (char 0)')
        mock_get.return_value = response
        api = ControllerAPIClient(self.client)

        with patch.object(api.session, 'request') as mock_request:
            result = ExecutionChannel(api).heartbeat('w1', WorkerHeartbeat())

        self.assertIsNone(result)
        mock_request.assert_not_called()

    @patch('jobworker.discovery.requests.get')
    def test_registry_error_status(self, mock_get):
        mock_get.return_value = _registry_response(None, ok=False, status_code=500)
        self.assertIsNone(self.client.resolve('controller'))


class TestDiscoveryFactory(unittest.TestCase):

    def test_static_from_controller_url(self):
        config = WorkerConfig(worker_name='w1', cluster='c1', controller_url='http://localhost:8080')
        client = get_discovery_client(config)
        self.assertIsInstance(client, StaticDiscoveryClient)
        self.assertEqual(client.resolve('controller'), 'http://localhost:8080')

    def test_registry_takes_precedence(self):
        config = WorkerConfig(worker_name='w1', cluster='c1', controller_url='http://localhost:8080',
                              discovery_registry_url='http://consul:8500')
        self.assertIsInstance(get_discovery_client(config), RegistryDiscoveryClient)


if __name__ == '__main__':
    unittest.main()
