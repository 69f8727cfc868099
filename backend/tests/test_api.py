"""
Tests for the HTTP layer.
"""

import json

from fastapi.testclient import TestClient

from accessmap.api.routes.analysis import reset_session
from accessmap.main import app

API = "/api/v1"

NETWORK = {
    "streets": [
        {"coordinates": [[4.0, 52.0], [4.001, 52.0]], "length": 100},
        {"coordinates": [[4.001, 52.0], [4.002, 52.0]], "length": 150},
    ],
    "buildings": [
        {"id": "home", "centroid": [4.0, 52.0], "land_use_areas": {"Generic Residential": 120}},
        {"id": "office", "centroid": [4.001, 52.0], "land_use_areas": {"Generic Office Building": 900}},
    ],
    "building_features": [
        {
            "type": "Feature",
            "geometry": {
                "type": "Polygon",
                "coordinates": [[[4.0019, 51.9999], [4.0021, 51.9999], [4.0021, 52.0001], [4.0019, 52.0001]]],
            },
            "properties": {"Building ID": "shop", "Height": 6, "Generic Retail": 300},
        },
    ],
}


def parse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


class TestAnalysisApi:
    """End-to-end tests through the FastAPI app."""

    def setup_method(self):
        reset_session()
        self.client = TestClient(app)

    def teardown_method(self):
        reset_session()

    def _load(self):
        response = self.client.post(f"{API}/network/load", json=NETWORK)
        assert response.status_code == 200
        return response.json()

    def test_root_and_health(self):
        assert self.client.get("/health").json() == {"status": "healthy"}
        assert self.client.get("/").json()["name"] == "Accessmap API"

    def test_status_before_load(self):
        status = self.client.get(f"{API}/session/status").json()

        assert status["loaded"] is False
        assert status["state"] == "idle"

    def test_scores_need_a_network(self):
        response = self.client.post(f"{API}/scores", json={})

        assert response.status_code == 409

    def test_load_network(self):
        stats = self._load()

        assert stats["node_count"] == 3
        assert stats["edge_count"] == 4
        assert stats["component_count"] == 1
        assert stats["building_count"] == 3
        assert stats["residential_count"] == 1
        assert stats["available_land_uses"] == ["Generic Office Building", "Generic Retail"]

    def test_malformed_street_length(self):
        bad = {"streets": [{"coordinates": [[4.0, 52.0], [4.001, 52.0]], "length": "far"}]}

        response = self.client.post(f"{API}/network/load", json=bad)

        assert response.status_code == 400

    def test_building_scores(self):
        self._load()

        response = self.client.post(f"{API}/scores", json={
            "curve": {"mode": "negative_exponential", "alpha": 0.003},
            "land_use": "Generic Retail",
            "attractivity_mode": "count",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "ready"
        assert body["mode"] == "buildings"
        assert body["normalized_scores"] == {"home": 1.0}
        assert 0 < body["raw_scores"]["home"] < 1
        assert body["summary"]["count"] == 1

    def test_scores_with_custom_pins(self):
        self._load()

        response = self.client.post(f"{API}/scores", json={
            "curve": {"mode": "polyline", "points": [{"x": 0, "y": 1}, {"x": 1000, "y": 0}]},
            "custom_pins": [{"id": "p1", "coord": [4.0, 52.0], "attractivity": 5}],
        })

        assert response.json()["raw_scores"] == {"home": 5.0}

    def test_invalid_curve_is_rejected(self):
        self._load()

        response = self.client.post(f"{API}/scores", json={
            "curve": {"mode": "exponential_power", "b": 0, "c": 2},
        })

        assert response.status_code == 422

    def test_unknown_land_use_is_rejected(self):
        self._load()

        response = self.client.post(f"{API}/scores", json={"land_use": "Generic Retial"})

        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"] == ["body", "land_use"]

    def test_grid_scores(self):
        self._load()

        response = self.client.post(f"{API}/grid/scores", json={
            "curve": {"mode": "exponential_power", "b": 700, "c": 2},
            "hex_cells": [
                {"id": "h1", "center": [4.0, 52.0001]},
                {"id": "h2", "center": [4.002, 52.0001]},
                {"id": "h3", "center": [4.001, 52.0], "intersects_street": True},
            ],
            "attractors": [{"id": "g", "coord": [4.0, 52.0], "attractivity": 2}],
        })

        body = response.json()
        assert body["mode"] == "grid"
        assert set(body["raw_scores"]) == {"h1", "h2"}
        assert body["normalized_scores"] == {"h1": 1.0, "h2": 0.0}

        status = self.client.get(f"{API}/session/status").json()
        assert status["full_matrix_ready"] is True

    def test_matrix_build(self):
        self._load()

        response = self.client.post(f"{API}/matrix/build", json={"mode": "grid"})

        assert response.status_code == 200
        assert response.json()["source_count"] == 3

    def test_matrix_stream(self):
        self._load()

        response = self.client.post(f"{API}/matrix/stream", json={"mode": "buildings"})

        assert response.status_code == 200
        events = parse_events(response.text)
        progress = [e["percent"] for e in events if e["type"] == "progress"]
        assert events[-1]["type"] == "complete"
        assert events[-1]["source_count"] == 1
        assert progress == sorted(progress)
        assert progress[-1] == 100

    def test_matrix_stream_needs_a_network(self):
        response = self.client.post(f"{API}/matrix/stream", json={"mode": "buildings"})

        assert response.status_code == 409

    def test_measure(self):
        self._load()

        response = self.client.post(f"{API}/measure", json={"a": [4.0, 52.0], "b": [4.002, 52.0]})

        body = response.json()
        assert body["distance_m"] == 250.0
        assert body["formatted"] == "250 m"
        assert len(body["node_path"]) == 3

    def test_curve_sample(self):
        response = self.client.post(f"{API}/curve/sample", json={
            "curve": {"mode": "negative_exponential", "alpha": 0.003},
            "steps": 4,
        })

        body = response.json()
        assert body["mode"] == "negative_exponential"
        assert [s[0] for s in body["samples"]] == [0, 500, 1000, 1500, 2000]
        assert body["samples"][0][1] == 1.0
