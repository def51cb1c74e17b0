"""
Tests for the batch HTTP endpoints.

Tests cover:
- File upload and batch creation
- Background dispatch and dashboard progress
- Batch listing and export download
- Health, metrics and request-id plumbing
- End-to-end: upload, send, button reply, export
"""

import json
import time

import pytest

from notifier.config import settings
from notifier.reporting import EXPORT_HEADER


HEADER = "NOME|TELEFONE|TIPO|DATA|HORA|LOCAL|PROFISSIONAL|OBSERVACAO"


def agenda(*lines: str) -> bytes:
    return "\n".join((HEADER,) + lines).encode("utf-8") + b"\n"


def upload(client, content: bytes, filename: str = "agenda.txt", **params):
    return client.post(
        "/upload",
        params=params,
        files={"file": (filename, content, "text/plain")},
    )


def wait_for_dispatch(client, batch_id: int, timeout: float = 5.0) -> dict:
    """Poll the dashboard until no message of the batch is PENDING."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        summary = client.get(f"/dashboard/{batch_id}").json()["summary"]
        if summary["pending"] == 0:
            return summary
        time.sleep(0.02)
    raise AssertionError(f"batch {batch_id} still has pending messages")


BRUNO = "Bruno|5599999|consulta|2024-05-01|10:00|Clinic|Dr. Silva|"
CARLA = "Carla|5588888|exame|02/05/2024|08:30|Lab Centro|Dra. Souza|Jejum de 8 horas"


class TestUpload:
    """Test POST /upload."""

    def test_creates_batch(self, client):
        response = upload(client, agenda(BRUNO, CARLA))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["total_records"] == 2
        assert isinstance(data["batch_id"], int)

    def test_skips_blank_and_incomplete_lines(self, client):
        response = upload(client, agenda("Ana;", "", BRUNO, "|5577777|consulta|2024-05-01|10:00|X|Y|"))

        assert response.status_code == 200
        assert response.json()["total_records"] == 1

    def test_messages_start_pending(self, client):
        batch_id = upload(client, agenda(BRUNO, CARLA)).json()["batch_id"]

        data = client.get(f"/dashboard/{batch_id}").json()

        assert data["summary"]["total"] == 2
        assert data["summary"]["pending"] == 2
        assert [m["status"] for m in data["messages"]] == ["PENDING", "PENDING"]
        assert data["messages"][0]["note"] == "Nenhuma observação adicional"
        assert data["messages"][1]["note"] == "Jejum de 8 horas"

    def test_header_only_file(self, client):
        response = upload(client, HEADER.encode("utf-8"))

        assert response.status_code == 200
        assert response.json()["total_records"] == 0

    def test_strict_rejects_malformed_line(self, client):
        response = upload(client, agenda(BRUNO, "Ana;"), strict="true")

        assert response.status_code == 422
        assert client.get("/batches").json() == []

    def test_non_utf8_rejected(self, client):
        response = upload(client, HEADER.encode("utf-8") + b"\nJo\xe3o|5511|consulta|2024-05-01|10:00|X|Y|")

        assert response.status_code == 400

    def test_missing_file(self, client):
        response = client.post("/upload")

        assert response.status_code == 422


class TestSend:
    """Test POST /batch/{batch_id}/send and dashboard progress."""

    def test_send_returns_immediately_and_completes(self, client, stub_client):
        batch_id = upload(client, agenda(BRUNO, CARLA)).json()["batch_id"]

        response = client.post(f"/batch/{batch_id}/send")

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Processamento iniciado"}
        summary = wait_for_dispatch(client, batch_id)
        assert summary["sent"] == 2
        assert summary["awaiting_reply"] == 2
        assert [call[1] for call in stub_client.template_calls] == ["lembrete_consulta", "lembrete_exame"]

    def test_failed_send_recorded(self, client, stub_client):
        stub_client.fail_for.add("5588888")
        batch_id = upload(client, agenda(BRUNO, CARLA)).json()["batch_id"]

        client.post(f"/batch/{batch_id}/send")
        summary = wait_for_dispatch(client, batch_id)

        assert (summary["sent"], summary["failed"]) == (1, 1)
        messages = client.get(f"/dashboard/{batch_id}").json()["messages"]
        failed = [m for m in messages if m["status"] == "FAILED"]
        assert failed[0]["error_detail"] == "(#131026) Message undeliverable"
        assert failed[0]["provider_message_id"] is None

    def test_resend_only_touches_pending(self, client, stub_client):
        batch_id = upload(client, agenda(BRUNO)).json()["batch_id"]
        client.post(f"/batch/{batch_id}/send")
        wait_for_dispatch(client, batch_id)

        client.post(f"/batch/{batch_id}/send")
        wait_for_dispatch(client, batch_id)

        assert len(stub_client.template_calls) == 1

    def test_double_send_contacts_provider_once_per_message(self, client, stub_client):
        batch_id = upload(client, agenda(BRUNO, CARLA)).json()["batch_id"]

        first = client.post(f"/batch/{batch_id}/send")
        second = client.post(f"/batch/{batch_id}/send")
        summary = wait_for_dispatch(client, batch_id)

        assert (first.status_code, second.status_code) == (200, 200)
        assert summary["sent"] == 2
        assert sorted(call[0] for call in stub_client.template_calls) == ["5588888", "5599999"]

    def test_unknown_batch(self, client):
        response = client.post("/batch/999/send")

        assert response.status_code == 404


class TestBatchListing:
    """Test GET /batches and GET /dashboard/{batch_id}."""

    def test_empty(self, client):
        response = client.get("/batches")

        assert response.status_code == 200
        assert response.json() == []

    def test_newest_first_with_counts(self, client):
        first = upload(client, agenda(BRUNO), filename="segunda.txt").json()["batch_id"]
        second = upload(client, agenda(BRUNO, CARLA), filename="terca.txt").json()["batch_id"]

        data = client.get("/batches").json()

        assert [b["id"] for b in data] == [second, first]
        assert data[0]["source_name"] == "terca.txt"
        assert data[0]["total_records"] == 2
        assert data[0]["pending"] == 2
        assert data[1]["total"] == 1

    def test_dashboard_unknown_batch(self, client):
        response = client.get("/dashboard/999")

        assert response.status_code == 404
        assert response.json() == {"detail": "batch 999 not found"}


class TestExport:
    """Test GET /batch/{batch_id}/export."""

    def test_download(self, client):
        batch_id = upload(client, agenda(BRUNO)).json()["batch_id"]

        response = client.get(f"/batch/{batch_id}/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["content-disposition"] == f"attachment; filename=retorno_lote_{batch_id}.txt"
        assert response.text == f"{EXPORT_HEADER}\n5599999|PENDING|||||\n"

    def test_unknown_batch(self, client):
        assert client.get("/batch/999/export").status_code == 404


class TestEndToEnd:

    def test_upload_send_confirm_export(self, client, stub_client):
        stub_client.next_ids = ["wamid.123"]
        batch_id = upload(client, agenda("Ana;", BRUNO)).json()["batch_id"]

        client.post(f"/batch/{batch_id}/send")
        wait_for_dispatch(client, batch_id)

        reply = {
            "entry": [{
                "changes": [{
                    "value": {
                        "messages": [{
                            "from": "5599999",
                            "type": "button",
                            "context": {"id": "wamid.123"},
                            "button": {"payload": "Confirmar", "text": "Confirmar"},
                        }],
                    },
                }],
            }],
        }
        response = client.post("/webhook", content=json.dumps(reply), headers={"Content-Type": "application/json"})
        assert response.json() == {"status": "ok"}

        summary = client.get(f"/dashboard/{batch_id}").json()["summary"]
        assert summary["replies_received"] == 1
        assert summary["awaiting_reply"] == 0
        assert [to for to, _ in stub_client.text_calls] == ["5599999"]

        lines = client.get(f"/batch/{batch_id}/export").text.splitlines()
        assert len(lines) == 2
        columns = lines[1].split("|")
        assert columns[0] == "5599999"
        assert columns[1] == "SENT"
        assert columns[3] == "wamid.123"
        assert columns[5] == "CONFIRM"
        assert columns[6] != ""


class TestOperational:
    """Test health probes, metrics and request ids."""

    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_credentials(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_TOKEN", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics_exposed(self, client):
        upload(client, agenda(BRUNO))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "batches_ingested_total" in response.text
        assert "http_requests_total" in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/batches", headers={"X-Request-ID": "req-42"})

        assert response.headers["x-request-id"] == "req-42"


class TestServerEntryPoint:

    def test_run_starts_uvicorn_with_settings(self, monkeypatch):
        import uvicorn

        from notifier import main

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
        monkeypatch.setattr(settings, "PORT", 9001)

        main.run()

        assert calls == [("notifier.main:app", {
            "host": settings.HOST,
            "port": 9001,
            "log_level": settings.LOG_LEVEL.lower(),
        })]
