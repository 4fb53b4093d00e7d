from __future__ import annotations

import json

from app.services.reconciliation import ReconciliationEngine
from scripts import cache_admin


def test_build_status_counts_cached_records(local_cache, make_claim, make_transfer):
    claims = [make_claim(claim_num=1), make_claim(claim_num=2, amount="5")]
    transfers = [make_transfer()]
    local_cache.save_raw(transfers, claims)
    local_cache.save_aggregated(ReconciliationEngine().reconcile(claims, transfers))
    local_cache.save_settings({"limit": 10})

    status = cache_admin.build_status(local_cache)

    assert status["has_cached_data"] is True
    assert status["claims"] == 2
    assert status["transfers"] == 1
    assert status["completed_transfers"] == 1
    assert status["settings"] == {"limit": 10}
    assert status["keys"] == ["aggregated", "claims", "settings", "timestamp", "transfers"]
    assert status["last_updated"] is not None


def test_main_clears_selected_keys(session_factory, local_cache, make_claim, monkeypatch, capsys):
    local_cache.save_raw([], [make_claim()])
    monkeypatch.setattr(cache_admin, "init_db", lambda: None)
    monkeypatch.setattr(cache_admin, "SessionLocal", session_factory)

    cache_admin.main(["clear", "--key", "claims"])

    assert json.loads(capsys.readouterr().out) == {"removed": 1}
    assert local_cache.load_claims() == []
    assert local_cache.get("transfers") == []


def test_main_prints_status(session_factory, monkeypatch, capsys):
    monkeypatch.setattr(cache_admin, "init_db", lambda: None)
    monkeypatch.setattr(cache_admin, "SessionLocal", session_factory)

    cache_admin.main(["status"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["has_cached_data"] is False
    assert payload["claims"] == 0
