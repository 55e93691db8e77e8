"""Reconciliation endpoints over real uploads."""

from uuid import uuid4

import pytest
import pytest_asyncio

from docportal.services.processing import drain
from tests.factories import invoice_files, statement_csv

BANK_ROWS = [
    ("2025-01-20", "STAPLES STORE 12", "-45.00"),
    ("2025-01-22", "PRET A MANGER", "-6.40"),
    ("2025-01-25", "ACME WIDGETS", "-99.00"),
]


async def _upload_and_drain(client, **kwargs) -> str:
    response = await client.post("/jobs", **kwargs)
    assert response.status_code == 202, response.text
    await drain()
    return response.json()["job_id"]


@pytest_asyncio.fixture
async def ledger(client, invoice_adapter):
    """An invoice batch and a bank statement covering the same spend."""
    invoice_job = await _upload_and_drain(
        client, files=invoice_files("staples.pdf", "pret.jpg"), data={"job_type": "invoice_batch"}
    )
    bank_job = await _upload_and_drain(
        client,
        files=[("files", ("statement.csv", statement_csv(BANK_ROWS), "text/csv"))],
        data={"job_type": "spreadsheet"},
    )
    lines = (await client.get(f"/jobs/{invoice_job}/transactions")).json()
    bank = (await client.get(f"/jobs/{bank_job}/transactions")).json()
    return {
        "bank_job": bank_job,
        "bank": bank,
        "lines": lines,
        "staples": lines[0]["document_id"],
        "pret": lines[3]["document_id"],
    }


@pytest.mark.asyncio
async def test_candidates_rank_the_matching_invoice_first(client, ledger):
    staples_txn = ledger["bank"][0]

    candidates = (await client.get(f"/reconciliation/candidates/{staples_txn['id']}")).json()

    assert candidates[0]["document"]["id"] == ledger["staples"]
    assert candidates[0]["tier"] == "high"
    assert candidates[0]["amount_difference"] == "0.00"
    assert candidates[0]["date_difference_days"] == 0
    assert candidates[1]["document"]["id"] == ledger["pret"]
    assert candidates[1]["tier"] == "low"

    limited = await client.get(f"/reconciliation/candidates/{staples_txn['id']}", params={"limit": 1})
    assert len(limited.json()) == 1


@pytest.mark.asyncio
async def test_manual_match_replace_and_unmatch(client, ledger):
    txn_id = ledger["bank"][0]["id"]

    matched = await client.post(
        "/reconciliation/match", json={"transaction_id": txn_id, "document_id": ledger["staples"]}
    )
    assert matched.status_code == 200
    assert matched.json()["matched_by"] == "manual"

    stale = await client.post(
        "/reconciliation/match",
        json={"transaction_id": txn_id, "document_id": ledger["pret"], "expected_document_id": None},
    )
    assert stale.status_code == 409

    replaced = await client.post(
        "/reconciliation/match",
        json={"transaction_id": txn_id, "document_id": ledger["pret"], "expected_document_id": ledger["staples"]},
    )
    assert replaced.status_code == 200
    assert replaced.json()["document_id"] == ledger["pret"]

    assert (await client.delete(f"/reconciliation/match/{txn_id}")).status_code == 204
    assert (await client.delete(f"/reconciliation/match/{txn_id}")).status_code == 204


@pytest.mark.asyncio
async def test_match_rejects_line_items_and_unknown_ids(client, ledger):
    line_item = ledger["lines"][0]["id"]

    assert (
        await client.post("/reconciliation/match", json={"transaction_id": line_item, "document_id": ledger["pret"]})
    ).status_code == 400
    assert (
        await client.post(
            "/reconciliation/match", json={"transaction_id": str(uuid4()), "document_id": ledger["pret"]}
        )
    ).status_code == 404
    assert (await client.get(f"/reconciliation/candidates/{uuid4()}")).status_code == 404


@pytest.mark.asyncio
async def test_auto_match_links_confident_pairs(client, ledger):
    response = await client.post("/reconciliation/auto-match", json={"job_id": ledger["bank_job"]})

    assert response.status_code == 200
    body = response.json()
    assert body["matched"] == 2
    pairs = {(m["transaction_id"], m["document_id"]) for m in body["matches"]}
    assert pairs == {
        (ledger["bank"][0]["id"], ledger["staples"]),
        (ledger["bank"][1]["id"], ledger["pret"]),
    }
    assert all(m["matched_by"] == "auto" for m in body["matches"])

    again = (await client.post("/reconciliation/auto-match")).json()
    assert again["matched"] == 0
    assert (await client.post("/reconciliation/auto-match", json={"job_id": str(uuid4())})).status_code == 404
