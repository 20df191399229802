"""API-level tests for the certificate, claim and template endpoints."""

import pytest
from fastapi.testclient import TestClient

from certificate_pipeline.api import app
from certificate_pipeline.db.base import get_db
from certificate_pipeline.routes import get_pipeline
from certificate_pipeline.worker.renderer import DOCX_MEDIA_TYPE

from conftest import CERTIFICATE_BODY, build_docx, corrupt_member, docx_text


@pytest.fixture
def client(session_factory, pipeline):
    """Test client bound to the per-test database and pipeline."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


def error_code(response) -> str:
    return response.json()["detail"]["error"]["code"]


class TestClaimPayable:
    def test_creates_pending_row(self, client, make_claim):
        claim = make_claim()
        response = client.post(f"/claims/{claim.id}/payable")

        assert response.status_code == 202
        data = response.json()
        assert data["claim_id"] == claim.id
        assert data["status"] == "pending"
        assert data["student_status"] == "Generation in progress"
        assert data["registration_number"] is None

    def test_unpaid_claim(self, client, make_claim):
        claim = make_claim(payment_state="refunded")
        response = client.post(f"/claims/{claim.id}/payable")

        assert response.status_code == 409
        error = response.json()["detail"]["error"]
        assert error["code"] == "CLAIM_NOT_PAYABLE"
        assert error["details"] == {"claim_id": claim.id, "payment_state": "refunded"}

    def test_unknown_claim(self, client):
        response = client.post("/claims/404/payable")
        assert response.status_code == 404
        assert error_code(response) == "CLAIM_NOT_FOUND"


class TestGenerate:
    def test_generate(self, client, make_claim, active_templates):
        claim = make_claim()
        response = client.post(f"/certificates/generate/{claim.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["student_status"] == "Available"
        assert data["registration_number"] == "ILC000001"
        assert data["attempt_count"] == 1

    def test_generate_is_idempotent(self, client, make_claim, active_templates):
        claim = make_claim()
        first = client.post(f"/certificates/generate/{claim.id}").json()
        second = client.post(f"/certificates/generate/{claim.id}").json()

        assert first["id"] == second["id"]
        assert second["attempt_count"] == 1

    def test_missing_template(self, client, make_claim):
        claim = make_claim()
        response = client.post(f"/certificates/generate/{claim.id}")

        assert response.status_code == 422
        assert error_code(response) == "TEMPLATE_NOT_FOUND"

        row = client.get(f"/certificates/generated/by-claim/{claim.id}").json()
        assert row["status"] == "failed"
        assert row["student_status"] == "Generation failed - contact support"

    def test_retry_of_ready_certificate(self, client, make_claim, active_templates):
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()
        response = client.post(f"/certificates/generated/{certificate['id']}/retry")

        assert response.status_code == 409
        assert error_code(response) == "INVALID_TRANSITION"

    def test_retry_failed_certificate(self, client, converter, make_claim, active_templates):
        converter.unavailable = True
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()
        assert certificate["status"] == "failed"
        assert "certificate" in certificate["document_errors"]

        converter.unavailable = False
        response = client.post(f"/certificates/generated/{certificate['id']}/retry")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestQueries:
    def test_list_filtered_by_status(self, client, make_claim, active_templates):
        client.post(f"/certificates/generate/{make_claim().id}")
        client.post(f"/claims/{make_claim(student_id=8).id}/payable")

        ready = client.get("/certificates/generated", params={"status": "ready"}).json()
        everything = client.get("/certificates/generated").json()

        assert len(ready) == 1
        assert len(everything) == 2

    def test_invalid_status_filter(self, client):
        response = client.get("/certificates/generated", params={"status": "shipped"})
        assert response.status_code == 422

    def test_get_unknown(self, client):
        response = client.get("/certificates/generated/999")
        assert response.status_code == 404
        assert error_code(response) == "CERTIFICATE_NOT_FOUND"

    def test_placeholders(self, client, make_claim, active_templates):
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()
        data = client.get(f"/certificates/generated/{certificate['id']}/placeholders").json()

        assert data["registration_number"] == "ILC000001"
        assert data["fields"]["certificate"]["STUDENT_NAME"] == "Ada Lovelace"

    def test_queue_status(self, client, make_claim):
        client.post(f"/claims/{make_claim().id}/payable")
        data = client.get("/certificates/queue/status").json()

        assert data["pending"] == 1
        assert data["total"] == 1

    def test_next_registration_number(self, client, make_claim, active_templates):
        assert client.get("/certificates/next-registration-number").json() == {
            "registration_number": "ILC000001"
        }
        client.post(f"/certificates/generate/{make_claim().id}")
        assert client.get("/certificates/next-registration-number").json() == {
            "registration_number": "ILC000002"
        }


class TestDeliveryAndDownload:
    def test_download_after_delivery(self, client, make_claim, active_templates):
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()
        number = certificate["registration_number"]

        before = client.get(f"/certificates/public-download/certificate/{number}")
        assert before.status_code == 404

        delivered = client.post(f"/certificates/generated/{certificate['id']}/deliver")
        assert delivered.status_code == 200
        assert delivered.json()["status"] == "delivered"
        assert delivered.json()["delivered_at"] is not None

        response = client.get(f"/certificates/public-download/certificate/{number}")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert 'filename="Certificate_ILC000001.pdf"' in response.headers["content-disposition"]
        assert response.content.startswith(b"%PDF-")

    def test_deliver_failed_certificate(self, client, converter, make_claim, active_templates):
        converter.unavailable = True
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()

        response = client.post(f"/certificates/generated/{certificate['id']}/deliver")

        assert response.status_code == 409
        assert error_code(response) == "INVALID_TRANSITION"

    def test_unknown_document_kind(self, client):
        response = client.get("/certificates/public-download/diploma/ILC000001")
        assert response.status_code == 422

    def test_unknown_registration_number(self, client):
        response = client.get("/certificates/public-download/transcript/ILC999999")
        assert response.status_code == 404

    def test_deliver_all(self, client, converter, make_claim, active_templates):
        ready = client.post(f"/certificates/generate/{make_claim().id}").json()
        converter.unavailable = True
        failed = client.post(f"/certificates/generate/{make_claim(student_id=8).id}").json()

        response = client.post(
            "/certificates/deliver-all", json={"certificate_ids": [ready["id"], failed["id"]]}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["delivered"] == 1
        assert body["failed"] == 1
        assert body["results"][0]["delivered_by"] == "admin"
        assert body["errors"][0]["certificate_id"] == failed["id"]
        assert body["errors"][0]["code"] == "INVALID_TRANSITION"

    def test_deliver_all_requires_ids(self, client):
        response = client.post("/certificates/deliver-all", json={"certificate_ids": []})
        assert response.status_code == 422

    def test_student_delivered_list(self, client, make_claim, active_templates):
        certificate = client.post(f"/certificates/generate/{make_claim(student_id=31).id}").json()
        client.post(f"/certificates/generated/{certificate['id']}/deliver")

        response = client.get("/certificates/students/31/delivered")

        assert response.status_code == 200
        assert [c["registration_number"] for c in response.json()] == ["ILC000001"]
        assert client.get("/certificates/students/32/delivered").json() == []


class TestAdminDocuments:
    def test_download_source_docx(self, client, make_claim, active_templates):
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()

        response = client.get(f"/certificates/generated/{certificate['id']}/docx/transcript")

        assert response.status_code == 200
        assert response.headers["content-type"] == DOCX_MEDIA_TYPE
        assert 'filename="Transcript_ILC000001.docx"' in response.headers["content-disposition"]
        assert "Bernoulli Numbers" in docx_text(response.content)

    def test_download_source_not_rendered(self, client, make_claim):
        certificate = client.post(f"/claims/{make_claim().id}/payable").json()

        response = client.get(f"/certificates/generated/{certificate['id']}/docx/certificate")

        assert response.status_code == 404
        assert error_code(response) == "CERTIFICATE_NOT_FOUND"

    def test_reconvert(self, client, converter, make_claim, active_templates):
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()
        converter.calls.clear()

        response = client.post(f"/certificates/generated/{certificate['id']}/reconvert/certificate")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        assert converter.calls == ["Certificate_ILC000001.docx"]

    def test_reconvert_failed_row(self, client, converter, make_claim, active_templates):
        converter.unavailable = True
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()

        response = client.post(f"/certificates/generated/{certificate['id']}/reconvert/certificate")

        assert response.status_code == 409
        assert error_code(response) == "CERTIFICATE_NOT_SETTLED"

    def test_reconvert_unknown_kind(self, client):
        response = client.post("/certificates/generated/1/reconvert/diploma")
        assert response.status_code == 422

    def test_history(self, client, make_claim, active_templates):
        certificate = client.post(f"/certificates/generate/{make_claim().id}").json()

        response = client.get(f"/certificates/generated/{certificate['id']}/history")

        assert response.status_code == 200
        actions = [entry["action"] for entry in response.json()]
        assert actions[0] == "status_changed"
        assert actions[-1] == "created"
        assert "number_allocated" in actions


class TestTemplates:
    def upload(self, client, content, filename="certificate.docx", kind="certificate"):
        return client.post(
            "/certificate-templates/upload",
            data={"kind": kind, "course_kind": "cpd", "name": "Standard certificate"},
            files={"file": (filename, content, DOCX_MEDIA_TYPE)},
        )

    def test_upload_and_activate(self, client):
        response = self.upload(client, build_docx(CERTIFICATE_BODY))

        assert response.status_code == 201
        template = response.json()
        assert template["kind"] == "certificate"
        assert template["name"] == "Standard certificate"
        assert template["is_active"] is False

        activated = client.post(f"/certificate-templates/{template['id']}/activate")
        assert activated.status_code == 200
        assert activated.json()["status"] == "success"
        assert activated.json()["template"]["is_active"] is True

    def test_activation_replaces_previous(self, client):
        first = self.upload(client, build_docx(CERTIFICATE_BODY)).json()
        second = self.upload(client, build_docx(CERTIFICATE_BODY)).json()
        client.post(f"/certificate-templates/{first['id']}/activate")
        client.post(f"/certificate-templates/{second['id']}/activate")

        templates = client.get("/certificate-templates", params={"kind": "certificate"}).json()
        active = [t["id"] for t in templates if t["is_active"]]
        assert active == [second["id"]]

    def test_upload_not_a_docx(self, client):
        response = self.upload(client, b"plain text", filename="certificate.txt")
        assert response.status_code == 422
        assert error_code(response) == "INVALID_TEMPLATE"

    def test_upload_corrupt_docx(self, client):
        response = self.upload(client, b"not a zip archive")
        assert response.status_code == 422
        assert error_code(response) == "INVALID_TEMPLATE"

    def test_upload_damaged_document_part(self, client):
        response = self.upload(client, corrupt_member(build_docx(CERTIFICATE_BODY)))
        assert response.status_code == 422
        assert error_code(response) == "INVALID_TEMPLATE"
        assert client.get("/certificate-templates").json() == []

    def test_upload_unknown_kind(self, client):
        response = self.upload(client, build_docx(CERTIFICATE_BODY), kind="diploma")
        assert response.status_code == 422

    def test_activate_unknown(self, client):
        response = client.post("/certificate-templates/999/activate")
        assert response.status_code == 404
        assert error_code(response) == "TEMPLATE_NOT_FOUND"
