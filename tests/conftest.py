"""Shared fixtures for the load tester and metrics checker tests."""

import json

import pytest

from stress_test.rooms import Room


class FakeResponse:
    def __init__(self, status_code=200, text='{"status": "ok"}'):
        self.status_code = status_code
        self.text = text


class ScriptedSession:
    """Stands in for requests.Session; returns or raises one scripted item per post()."""

    def __init__(self, script=None, default=None):
        self.script = dict(script or {})
        self.default = default or FakeResponse()
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        call_index = len(self.calls)
        self.calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        item = self.script.get(call_index, self.default)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def rooms():
    return [
        Room(room_id="room-a", user_id="user-a", patient_id="patient-a"),
        Room(room_id="room-b", user_id="user-b", patient_id="patient-b"),
        Room(room_id="room-c", user_id="user-c", patient_id="patient-c"),
    ]


@pytest.fixture
def rooms_file(tmp_path):
    path = tmp_path / "test-data.json"
    path.write_text(json.dumps({
        "rooms": [
            {"roomId": "room-a", "userId": "user-a", "patientId": "patient-a"},
            {"roomId": "room-b", "userId": "user-b", "patientId": "patient-b"},
        ]
    }))
    return str(path)


def healthy_snapshot():
    """A snapshot of a quiet two-index cluster that trips no rule."""
    return {
        "timestamp": "2025-01-01T00:00:00+00:00",
        "cluster_health": {"status": "green", "number_of_nodes": 3},
        "thread_pool_stats": [
            {"node_name": "node-1", "name": "write", "rejected": "0", "queue": "0", "queue_size": "10000"},
            {"node_name": "node-1", "name": "search", "rejected": "0", "queue": "0", "queue_size": "1000"},
        ],
        "node_stats": [
            {
                "name": "node-1",
                "jvm": {
                    "mem": {"heap_used_percent": 40},
                    "gc": {"collectors": {"old": {"collection_count": 2}, "young": {"collection_count": 50}}},
                },
                "os": {"cpu": {"percent": 20}},
            }
        ],
        "index_stats": {
            "pms_green_dot": {"derived": {"avg_refresh_time_ms": 12.5, "indexing_rate": 250.0}},
            "pms-user-rooms": {"derived": {"avg_refresh_time_ms": 8.0, "indexing_rate": 90.0}},
        },
        "index_settings": {"pms_green_dot": {}, "pms-user-rooms": {}},
        "cluster_settings": {},
        "pending_tasks": [],
        "active_tasks": {
            "total": 4, "search_tasks": 2,
            "long_running_5s": 0, "long_running_10s": 0, "long_running_30s": 0, "tasks": [],
        },
        "circuit_breaker_status": {"nodes": [], "total_trips": 0},
        "cache_metrics": {"query_cache_evictions": 10, "field_data_evictions": 0, "nodes": []},
        "segment_stats": {
            "pms_green_dot": {"count": 120, "memory_in_bytes": 1024},
            "pms-user-rooms": {"count": 80, "memory_in_bytes": 512},
        },
        "queue_metrics": {
            "max_saturation": 0.0,
            "pools": [
                {"node_name": "node-1", "name": "write", "queue": 0, "queue_size": 10000, "saturation_pct": 0.0},
                {"node_name": "node-1", "name": "search", "queue": 0, "queue_size": 1000, "saturation_pct": 0.0},
            ],
        },
        "hot_threads": {"summary": ""},
    }


@pytest.fixture
def snapshot():
    return healthy_snapshot()


@pytest.fixture
def response_factory():
    return FakeResponse


@pytest.fixture
def session_factory():
    return ScriptedSession
