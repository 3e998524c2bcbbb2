"""Tests for the fact memory API endpoints."""

import uuid
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from factmemory.api.v1.endpoints.facts import get_fact_memory_service
from factmemory.core.exceptions import ConflictUnresolvedError, ExtractionTimeoutError, NotFoundError
from factmemory.main import app
from factmemory.schemas.facts import (
    BatchExtractionReport,
    BatchFailure,
    CriticalFacts,
    ExtractionResult,
    PromptWithFacts,
)

BASE = "/api/v1/users/user-1/facts"


def override_service() -> AsyncMock:
    mock_service = AsyncMock()
    app.dependency_overrides[get_fact_memory_service] = lambda: mock_service
    return mock_service


class TestGuaranteedReads:
    """Exact-lookup endpoints."""

    def test_get_user_name(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.get_user_name.return_value = "Clemens"

        response = test_client.get(f"{BASE}/user-name")

        assert response.status_code == 200
        assert response.json() == {"user_name": "Clemens"}
        mock_service.get_user_name.assert_awaited_once_with("user-1")

    def test_unknown_user_name_is_404(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.get_user_name.side_effect = NotFoundError("No canonical user name stored")

        response = test_client.get(f"{BASE}/user-name")

        assert response.status_code == 404
        data = response.json()
        assert data["kind"] == "not_found"
        assert data["error"] == "NotFoundError"

    def test_get_pet_names(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.get_pet_names.return_value = ["Holly", "Benny"]

        response = test_client.get(f"{BASE}/pet-names")

        assert response.status_code == 200
        assert response.json()["pet_names"] == ["Holly", "Benny"]

    def test_get_critical_facts(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.get_all_critical_facts.return_value = CriticalFacts(user_name="Clemens", location="Portland")

        response = test_client.get(f"{BASE}/critical")

        assert response.status_code == 200
        data = response.json()
        assert data["user_name"] == "Clemens"
        assert data["pet_names"] == []
        assert data["location"] == "Portland"


class TestExtraction:
    """Message ingestion endpoints."""

    def test_extract_single_message(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.extract_and_store_facts.return_value = ExtractionResult(method="pattern")

        response = test_client.post(f"{BASE}/extract", json={"content": "My name is Clemens", "message_id": "m1"})

        assert response.status_code == 200
        assert response.json()["method"] == "pattern"
        mock_service.extract_and_store_facts.assert_awaited_once_with("My name is Clemens", "m1", "user-1")

    def test_extract_requires_message_id(self, test_client: TestClient) -> None:
        override_service()

        response = test_client.post(f"{BASE}/extract", json={"content": "hello"})

        assert response.status_code == 422

    def test_extraction_timeout_is_504(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.extract_and_store_facts.side_effect = ExtractionTimeoutError("LLM extraction timed out")

        response = test_client.post(f"{BASE}/extract", json={"content": "long story", "message_id": "m1"})

        assert response.status_code == 504
        assert response.json()["kind"] == "extraction_timeout"

    def test_batch_reports_skipped_messages(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.extract_and_store_batch.return_value = BatchExtractionReport(
            total=2,
            processed=1,
            skipped=1,
            failures=[BatchFailure(index=1, message_id="m2", error_kind="validation_error", error="null content")],
            kind="partial_batch_failure",
        )

        response = test_client.post(
            "/api/v1/facts/extract-batch",
            json={
                "messages": [
                    {"content": "My name is Clemens", "message_id": "m1", "user_id": "user-1"},
                    {"content": None, "message_id": "m2", "user_id": "user-1"},
                ]
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert (data["processed"], data["skipped"], data["kind"]) == (1, 1, "partial_batch_failure")
        [messages] = mock_service.extract_and_store_batch.await_args.args
        assert [m.message_id for m in messages] == ["m1", "m2"]


class TestPromptAndConflicts:
    """Prompt generation and conflict endpoints."""

    def test_generate_prompt(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.generate_system_prompt_with_facts.return_value = PromptWithFacts(
            enhanced_prompt="Be kind.\n\n- User's name: Clemens", confidence=0.5, missing_categories=["pet_names"]
        )

        response = test_client.post(f"{BASE}/prompt", json={"base_prompt": "Be kind.", "query": "hi"})

        assert response.status_code == 200
        assert response.json()["confidence"] == 0.5
        mock_service.generate_system_prompt_with_facts.assert_awaited_once_with("user-1", "Be kind.", query="hi")

    def test_unconfirmed_profile_fact_is_409(self, test_client: TestClient) -> None:
        mock_service = override_service()
        conflict_id = str(uuid.uuid4())
        mock_service.get_profile_fact.side_effect = ConflictUnresolvedError(
            "Conflicting values for 'birthday' need confirmation",
            details={"conflict_id": conflict_id, "values": ["May 3", "June 5"], "current": "June 5"},
        )

        response = test_client.get(f"{BASE}/profile/birthday")

        assert response.status_code == 409
        data = response.json()
        assert data["kind"] == "conflict_unresolved"
        assert data["details"]["conflict_id"] == conflict_id

    def test_get_profile_fact(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.get_profile_fact.return_value = "Portland"

        response = test_client.get(f"{BASE}/profile/location")

        assert response.status_code == 200
        assert response.json() == {"kind": "location", "value": "Portland"}

    def test_unexpected_error_is_500(self, test_client: TestClient) -> None:
        mock_service = override_service()
        mock_service.get_pending_conflicts.side_effect = RuntimeError("boom")

        client = TestClient(app, raise_server_exceptions=False)
        response = client.get(f"{BASE}/conflicts")

        assert response.status_code == 500
        assert response.json()["kind"] == "internal_error"


class TestHealth:
    """Health endpoint."""

    def test_health_reports_database(self, test_client: TestClient) -> None:
        with patch(
            "factmemory.api.v1.endpoints.health.db_client.health_check",
            new=AsyncMock(return_value={"status": "healthy", "database": "sqlite", "latency_test": "passed"}),
        ):
            response = test_client.get("/health/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "sqlite"

    def test_health_degraded(self, test_client: TestClient) -> None:
        with patch(
            "factmemory.api.v1.endpoints.health.db_client.health_check",
            new=AsyncMock(return_value={"status": "unhealthy", "database": "postgresql", "error": "refused"}),
        ):
            response = test_client.get("/health/")

        assert response.json()["status"] == "degraded"
