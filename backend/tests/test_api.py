"""API tests for workflow, run, event and health endpoints."""

import pytest

from core.security import create_access_token

from factories import OTHER_ORG_ID, ORG_ID, delay_graph, team_size_graph

WORKFLOWS = "/api/v1/workflows/"
RUNS = "/api/v1/runs/"
EVENTS = "/api/v1/events/"


async def create_workflow(client, auth_headers, graph_json, name="Approved contacts"):
    response = await client.post(WORKFLOWS, json={"name": name, "graph": graph_json}, headers=auth_headers)
    assert response.status_code == 201, response.text
    return response.json()


async def create_published(client, auth_headers, graph_json, name="Approved contacts"):
    wf = await create_workflow(client, auth_headers, graph_json, name)
    response = await client.post(f"{WORKFLOWS}{wf['workflow_id']}/publish", headers=auth_headers)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealth:

    async def test_liveness(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_readiness(self, client):
        response = await client.get("/api/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "ok"

    async def test_request_id_header(self, client):
        response = await client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestAuth:

    @pytest.mark.parametrize("method,path", [
        ("get", WORKFLOWS),
        ("get", RUNS),
        ("post", EVENTS),
    ])
    async def test_requires_token(self, client, method, path):
        response = await getattr(client, method)(path)
        assert response.status_code == 401

    async def test_rejects_garbage_token(self, client):
        response = await client.get(WORKFLOWS, headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestWorkflowEndpoints:

    async def test_create_and_list(self, client, auth_headers):
        created = await create_workflow(client, auth_headers, team_size_graph())
        assert created["version"] == 1
        assert created["status"] == "draft"
        assert created["created_by"] == "user-1"

        response = await client.get(WORKFLOWS, headers=auth_headers)
        body = response.json()
        assert body["total"] == 1
        assert body["workflows"][0]["workflow_id"] == created["workflow_id"]

    async def test_publish_edit_and_versions(self, client, auth_headers):
        published = await create_published(client, auth_headers, delay_graph())
        assert published["status"] == "published"
        assert published["trigger_type"] == "contact_created"

        response = await client.put(
            f"{WORKFLOWS}{published['workflow_id']}/graph",
            json={"graph": delay_graph(minutes=30)},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["version"] == 2

        response = await client.get(f"{WORKFLOWS}{published['workflow_id']}", headers=auth_headers)
        versions = response.json()["versions"]
        assert [(v["version"], v["status"]) for v in versions] == [(2, "draft"), (1, "published")]

    async def test_invalid_graph_returns_422_with_errors(self, client, auth_headers):
        bad = team_size_graph()
        bad["edges"].append({"source": "a1", "target": "c1"})
        wf = await create_workflow(client, auth_headers, bad)

        response = await client.post(f"{WORKFLOWS}{wf['workflow_id']}/publish", headers=auth_headers)

        assert response.status_code == 422
        body = response.json()
        assert "cycle" in {e["code"] for e in body["errors"]}

    async def test_validate_reports_without_publishing(self, client, auth_headers):
        graph_json = team_size_graph()
        graph_json["nodes"][2]["data"]["config"]["tag_id"] = "no-such-tag"
        wf = await create_workflow(client, auth_headers, graph_json)

        response = await client.post(f"{WORKFLOWS}{wf['workflow_id']}/validate", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is False
        assert body["errors"] == [{"code": "unknown_reference", "message": body["errors"][0]["message"], "node_id": "a1"}]

    async def test_publish_twice_conflicts(self, client, auth_headers):
        published = await create_published(client, auth_headers, delay_graph())
        response = await client.post(f"{WORKFLOWS}{published['workflow_id']}/publish", headers=auth_headers)
        assert response.status_code == 409

    async def test_archive(self, client, auth_headers):
        published = await create_published(client, auth_headers, delay_graph())

        response = await client.post(f"{WORKFLOWS}{published['workflow_id']}/archive", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "archived"

    async def test_unknown_workflow_is_404(self, client, auth_headers):
        response = await client.get(f"{WORKFLOWS}missing", headers=auth_headers)
        assert response.status_code == 404

    async def test_manual_trigger(self, client, auth_headers, pipeline):
        pipeline.add_subject("c-1")
        published = await create_published(client, auth_headers, delay_graph())
        path = f"{WORKFLOWS}{published['workflow_id']}/trigger"

        response = await client.post(path, json={"subject_id": "c-1"}, headers=auth_headers)
        assert response.status_code == 201
        body = response.json()
        assert body["started"] is True
        assert body["run"]["state"] == "suspended"

        again = await client.post(path, json={"subject_id": "c-1"}, headers=auth_headers)
        assert again.status_code == 409

    async def test_manual_trigger_needs_published_version(self, client, auth_headers):
        wf = await create_workflow(client, auth_headers, delay_graph())
        response = await client.post(
            f"{WORKFLOWS}{wf['workflow_id']}/trigger", json={"subject_id": "c-1"}, headers=auth_headers
        )
        assert response.status_code == 404


class TestEventsAndRuns:

    async def test_event_starts_run_with_history(self, client, auth_headers, pipeline):
        pipeline.add_subject("c-1", custom_fields={"team_size": "1-5"})
        await create_published(client, auth_headers, team_size_graph())

        response = await client.post(
            EVENTS,
            json={"type": "stage_changed", "subject_id": "c-1", "payload": {"toStageId": "s-approved"}},
            headers=auth_headers,
        )
        assert response.status_code == 202
        body = response.json()
        assert body["matched"] == 1
        [run_id] = body["started_run_ids"]

        response = await client.get(f"{RUNS}{run_id}", headers=auth_headers)
        detail = response.json()
        assert detail["state"] == "completed"
        assert detail["trigger_event"]["organizationId"] == ORG_ID
        assert [(h["node_id"], h["outcome"]) for h in detail["history"]] == [("c1", "success"), ("a1", "success")]

    async def test_unknown_event_type_is_rejected(self, client, auth_headers):
        response = await client.post(EVENTS, json={"type": "deal_won", "subject_id": "c-1"}, headers=auth_headers)
        assert response.status_code == 422

    async def test_duplicate_event_is_deduplicated(self, client, auth_headers, pipeline):
        pipeline.add_subject("c-1")
        await create_published(client, auth_headers, delay_graph())
        payload = {"type": "contact_created", "subject_id": "c-1"}

        await client.post(EVENTS, json=payload, headers=auth_headers)
        response = await client.post(EVENTS, json=payload, headers=auth_headers)

        assert response.json()["deduplicated"] == 1
        assert response.json()["started_run_ids"] == []

    async def test_list_filter_and_cancel(self, client, auth_headers, pipeline):
        pipeline.add_subject("c-1")
        pipeline.add_subject("c-2")
        await create_published(client, auth_headers, delay_graph())
        for subject_id in ("c-1", "c-2"):
            await client.post(EVENTS, json={"type": "contact_created", "subject_id": subject_id}, headers=auth_headers)

        response = await client.get(RUNS, params={"subject_id": "c-1"}, headers=auth_headers)
        body = response.json()
        assert body["total"] == 1
        run = body["runs"][0]
        assert run["state"] == "suspended"
        assert run["resume_at"] is not None

        response = await client.post(f"{RUNS}{run['id']}/cancel", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["state"] == "cancelled"

        response = await client.post(f"{RUNS}{run['id']}/cancel", headers=auth_headers)
        assert response.status_code == 409

        response = await client.get(RUNS, params={"state": "suspended"}, headers=auth_headers)
        assert [r["subject_id"] for r in response.json()["runs"]] == ["c-2"]

    async def test_node_history_for_a_contact(self, client, auth_headers, pipeline):
        pipeline.add_subject("c-1", custom_fields={"team_size": "1-5"})
        pipeline.add_subject("c-2", custom_fields={"team_size": "1-5"})
        await create_published(client, auth_headers, team_size_graph())
        run_ids = []
        for _ in range(2):
            response = await client.post(
                EVENTS,
                json={"type": "stage_changed", "subject_id": "c-1", "payload": {"toStageId": "s-approved"}},
                headers=auth_headers,
            )
            run_ids += response.json()["started_run_ids"]
        await client.post(
            EVENTS,
            json={"type": "stage_changed", "subject_id": "c-2", "payload": {"toStageId": "s-approved"}},
            headers=auth_headers,
        )

        response = await client.get(f"{RUNS}history", params={"subject_id": "c-1"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["subject_id"] == "c-1"
        assert len(body["entries"]) == 4
        assert {e["run_id"] for e in body["entries"]} == set(run_ids)
        assert {e["node_id"] for e in body["entries"]} == {"c1", "a1"}

        other = create_access_token(user_id="user-2", email="ops@other.example.com", org_id=OTHER_ORG_ID)
        response = await client.get(
            f"{RUNS}history", params={"subject_id": "c-1"}, headers={"Authorization": f"Bearer {other}"}
        )
        assert response.json()["entries"] == []

    async def test_node_history_needs_a_contact(self, client, auth_headers):
        response = await client.get(f"{RUNS}history", headers=auth_headers)
        assert response.status_code == 422

    async def test_run_from_other_org_is_404(self, client, auth_headers, pipeline):
        pipeline.add_subject("c-1")
        await create_published(client, auth_headers, delay_graph())
        response = await client.post(
            EVENTS, json={"type": "contact_created", "subject_id": "c-1"}, headers=auth_headers
        )
        run_id = response.json()["started_run_ids"][0]

        other = create_access_token(user_id="user-2", email="ops@other.example.com", org_id=OTHER_ORG_ID)
        response = await client.get(f"{RUNS}{run_id}", headers={"Authorization": f"Bearer {other}"})
        assert response.status_code == 404
