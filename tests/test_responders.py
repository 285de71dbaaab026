"""
test_responders.py — Responder directory lookups and the JSON directory file.

Run with:
    pytest tests/test_responders.py -v
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from backend.app.core.config import TriageConfig
from backend.app.core.errors import NotFoundError
from backend.app.core.services import build_services
from backend.app.sos.responders import load_directory

EXAMPLE_FILE = Path(__file__).resolve().parent.parent / "responders.example.json"


def _write_rows(tmp_path, rows) -> Path:
    path = tmp_path / "responders.json"
    path.write_text(json.dumps(rows), encoding="utf-8")
    return path


class TestDirectoryLookups:

    def test_contact_and_lead(self, directory):
        assert directory.get_contact("R-1").email is not None
        assert directory.team_lead_of("R-1") == "L-1"
        assert directory.team_lead_of("GHOST") is None

    def test_unknown_contact(self, directory):
        with pytest.raises(NotFoundError):
            directory.get_contact("GHOST")

    def test_supervisors_and_nearby(self, directory):
        assert directory.duty_supervisors() == ["SUP-1"]
        near = directory.available_near(6.927, 79.861, 5)
        assert "NEAR-1" in near
        assert "FAR-1" not in near


class TestLoadDirectory:

    def test_example_file(self):
        directory = load_directory(EXAMPLE_FILE)
        assert len(directory) == 4
        assert directory.team_lead_of("R-7") == "L-1"
        assert directory.duty_supervisors() == ["SUP-1"]
        assert directory.available_near(6.927, 79.861, 2) == ["R-7", "R-8"]

    def test_row_conversion(self, tmp_path):
        path = _write_rows(tmp_path, [{
            "responder_id": " R-9 ", "name": "Asha", "push_token": "",
            "location": {"lat": 7.0, "lng": 80.0}, "available": False,
        }])
        contact = load_directory(path).get_contact("R-9")
        assert contact.push_token is None
        assert contact.location.latitude == 7.0
        assert contact.available is False

    def test_unknown_field_rejected(self, tmp_path):
        path = _write_rows(tmp_path, [{"responder_id": "R-1", "name": "A", "pager": "1"}])
        with pytest.raises(ValueError, match="Invalid responder directory"):
            load_directory(path)

    def test_bad_location_rejected(self, tmp_path):
        path = _write_rows(tmp_path, [
            {"responder_id": "R-1", "name": "A", "location": {"lat": 95, "lng": 0}},
        ])
        with pytest.raises(ValueError):
            load_directory(path)

    def test_duplicate_ids_rejected(self, tmp_path):
        path = _write_rows(tmp_path, [
            {"responder_id": "R-1", "name": "A"},
            {"responder_id": "R-1", "name": "B"},
        ])
        with pytest.raises(ValueError, match="Duplicate"):
            load_directory(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            load_directory(tmp_path / "absent.json")


class TestServicesDirectory:

    def test_built_from_configured_file(self):
        services = build_services(TriageConfig(responder_directory_file=str(EXAMPLE_FILE)))
        try:
            assert services.directory.get_contact("R-8").phone == "+94770000008"
        finally:
            services.close()

    def test_empty_without_file(self):
        services = build_services(TriageConfig())
        try:
            with pytest.raises(NotFoundError):
                services.directory.get_contact("R-7")
        finally:
            services.close()
