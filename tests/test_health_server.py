import sys

sys.path.insert(0, '.')

from fastapi.testclient import TestClient

from api import health_server
from risk.models import Position


class FakeManager:
    def __init__(self):
        self.resets = 0

    def health(self):
        return {
            'running': True,
            'last_cycle_duration': 0.012,
            'active_position_count': 1,
            'circuit_breaker_state': 'closed',
            'recent_error_count': 0,
            'uptime': 42.0,
        }

    def cycle_metrics(self):
        return {'cycle_count': 3, 'exit_sl_hit': 1}

    def reset_metrics(self):
        self.resets += 1


class FakePositions:
    def snapshot_all(self):
        return [Position('NSE_FNO', '43120', 'long', 50, 100.0, id='p1')]


class FakeService:
    def __init__(self):
        self.risk_manager = FakeManager()
        self.position_cache = FakePositions()


def test_health_endpoints():
    service = FakeService()
    client = TestClient(health_server.create_app(service=service))

    health = client.get('/health').json()
    assert health['running'] is True
    assert health['circuit_breaker_state'] == 'closed'
    assert 'timestamp' in health

    assert client.get('/metrics/cycle').json() == {'cycle_count': 3, 'exit_sl_hit': 1}
    assert client.post('/metrics/reset').json()['status'] == 'reset'
    assert service.risk_manager.resets == 1

    positions = client.get('/positions').json()
    assert positions['count'] == 1
    assert positions['positions'][0]['status'] == 'active'
