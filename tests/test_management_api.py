"""Tests for the management API: deliveries and endpoints."""

import httpx

from relay.models import Endpoint
from relay.models.delivery import AttemptResult
from relay.services.delivery_store import DeliveryStore
from relay.services.signing import verify
from relay.services.statistics_service import StatisticsService


async def post_webhook(client, endpoint, body=None):
    response = await client.post(f"/webhook/{endpoint.account_id}/{endpoint.id}", json=body or {"n": 1})
    assert response.status_code == 200
    return response.json()["data"]["webhookId"]


async def record_result(session_factory, delivery_id, success):
    result = AttemptResult(success=success, status_code=200 if success else 500, response_time_ms=40)
    async with session_factory() as db:
        await DeliveryStore(db).record_attempt(delivery_id, result, None)


class TestWebhooksAPI:
    async def test_requires_valid_token(self, client):
        response = await client.get("/api/webhooks", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401

    async def test_list_paginates_and_filters(self, client, auth_headers, make_account, make_endpoint):
        account = await make_account()
        first, second = await make_endpoint(account), await make_endpoint(account, name="Billing")
        for _ in range(3):
            await post_webhook(client, first)
        await post_webhook(client, second)

        response = await client.get("/api/webhooks", params={"limit": 2, "page": 2}, headers=auth_headers(account))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"] == {"currentPage": 2, "totalPages": 2, "totalItems": 4, "itemsPerPage": 2}
        assert len(data["webhooks"]) == 2
        assert "attempts" not in data["webhooks"][0]

        response = await client.get(
            "/api/webhooks", params={"endpoint_id": second.id, "status": "pending"}, headers=auth_headers(account)
        )
        assert response.json()["data"]["pagination"]["totalItems"] == 1

    async def test_limit_is_capped(self, client, auth_headers, make_account):
        account = await make_account()
        response = await client.get("/api/webhooks", params={"limit": 500}, headers=auth_headers(account))
        assert response.status_code == 422

    async def test_get_returns_attempts_and_is_account_scoped(
        self, client, session_factory, auth_headers, make_account, make_endpoint
    ):
        account, other = await make_account(), await make_account()
        endpoint = await make_endpoint(account)
        webhook_id = await post_webhook(client, endpoint)
        await record_result(session_factory, webhook_id, success=False)

        response = await client.get(f"/api/webhooks/{webhook_id}", headers=auth_headers(account))
        assert response.status_code == 200
        webhook = response.json()["data"]["webhook"]
        assert webhook["status"] == "failed"
        assert webhook["retryCount"] == 1
        assert webhook["attempts"][0]["attemptNumber"] == 1
        assert webhook["attempts"][0]["responseStatus"] == 500

        response = await client.get(f"/api/webhooks/{webhook_id}", headers=auth_headers(other))
        assert response.status_code == 404

    async def test_retry_failed_webhook(self, client, queue, session_factory, auth_headers, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)
        webhook_id = await post_webhook(client, endpoint)
        await record_result(session_factory, webhook_id, success=False)

        response = await client.post(f"/api/webhooks/{webhook_id}/retry", headers=auth_headers(account))

        assert response.status_code == 200
        assert response.json()["data"] == {"webhookId": webhook_id, "status": "queued"}
        job, _ = queue.jobs[-1]
        assert job.manual is True

    async def test_retry_delivered_webhook_is_400(self, client, session_factory, auth_headers, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)
        webhook_id = await post_webhook(client, endpoint)
        await record_result(session_factory, webhook_id, success=True)

        response = await client.post(f"/api/webhooks/{webhook_id}/retry", headers=auth_headers(account))

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Webhook already delivered successfully"


class TestEndpointsAPI:
    async def test_create_shows_secret_once(self, client, auth_headers, make_account):
        account = await make_account()

        response = await client.post(
            "/api/endpoints",
            json={
                "name": "Shop",
                "destinationUrl": "https://shop.example.com/hooks",
                "customHeaders": [{"name": "X-Shop", "value": "1"}],
                "retryConfig": {"maxRetries": 2, "retryIntervals": [1000, 5000]},
            },
            headers=auth_headers(account),
        )

        assert response.status_code == 201
        endpoint = response.json()["data"]["endpoint"]
        assert len(endpoint["secret"]) == 64
        assert endpoint["webhookUrl"].endswith(f"/webhook/{account.id}/{endpoint['id']}")
        assert endpoint["retryConfig"] == {"maxRetries": 2, "retryIntervals": [1000, 5000]}
        assert endpoint["customHeaders"] == [{"name": "X-Shop", "value": "1"}]

        stats = await client.get(f"/api/endpoints/{endpoint['id']}/stats", headers=auth_headers(account))
        assert "secret" not in stats.json()["data"]["stats"]

    async def test_regenerate_secret(self, client, auth_headers, make_account, make_endpoint):
        account, other = await make_account(), await make_account()
        endpoint = await make_endpoint(account)

        response = await client.post(f"/api/endpoints/{endpoint.id}/regenerate-secret", headers=auth_headers(account))
        assert response.status_code == 200
        secret = response.json()["data"]["secret"]
        assert len(secret) == 64
        assert secret != endpoint.secret

        response = await client.post(f"/api/endpoints/{endpoint.id}/regenerate-secret", headers=auth_headers(other))
        assert response.status_code == 404

    async def test_stats(self, client, session_factory, auth_headers, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)

        response = await client.get(f"/api/endpoints/{endpoint.id}/stats", headers=auth_headers(account))
        stats = response.json()["data"]["stats"]
        assert stats["totalRequests"] == 0
        assert stats["successRate"] == 100.0

        async with session_factory() as db:
            await StatisticsService(db).record(endpoint.id, success=True, latency_ms=120)
            await StatisticsService(db).record(endpoint.id, success=False, latency_ms=80)

        response = await client.get(f"/api/endpoints/{endpoint.id}/stats", headers=auth_headers(account))
        stats = response.json()["data"]["stats"]
        assert stats["totalRequests"] == 2
        assert stats["successfulRequests"] == 1
        assert stats["failedRequests"] == 1
        assert stats["successRate"] == 50.0
        assert stats["averageResponseTime"] == 100

    async def test_list_and_get_hide_deleted_endpoints(self, client, auth_headers, make_account, make_endpoint):
        account, other = await make_account(), await make_account()
        active = await make_endpoint(account)
        deleted = await make_endpoint(account, name="Old", is_active=False)
        await make_endpoint(other)

        response = await client.get("/api/endpoints", headers=auth_headers(account))
        assert response.status_code == 200
        data = response.json()["data"]
        assert [e["id"] for e in data["endpoints"]] == [active.id]
        assert data["pagination"]["totalItems"] == 1
        assert "secret" not in data["endpoints"][0]

        response = await client.get(
            "/api/endpoints", params={"include_inactive": "true"}, headers=auth_headers(account)
        )
        assert {e["id"] for e in response.json()["data"]["endpoints"]} == {active.id, deleted.id}

        response = await client.get(f"/api/endpoints/{active.id}", headers=auth_headers(account))
        assert response.status_code == 200
        assert response.json()["data"]["endpoint"]["successRate"] == 100.0

        response = await client.get(f"/api/endpoints/{active.id}", headers=auth_headers(other))
        assert response.status_code == 404

    async def test_update_changes_only_given_fields(self, client, auth_headers, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account, max_retries=3, retry_intervals_ms=[0, 1000, 2000])

        response = await client.put(
            f"/api/endpoints/{endpoint.id}",
            json={
                "destinationUrl": "https://hooks.example.com/v2",
                "retryConfig": {"retryIntervals": [5000, 10000]},
            },
            headers=auth_headers(account),
        )

        assert response.status_code == 200
        updated = response.json()["data"]["endpoint"]
        assert updated["destinationUrl"] == "https://hooks.example.com/v2"
        assert updated["retryConfig"] == {"maxRetries": 3, "retryIntervals": [5000, 10000]}
        assert updated["name"] == "Orders"

    async def test_update_rejects_negative_interval(self, client, auth_headers, make_account, make_endpoint):
        account = await make_account()
        endpoint = await make_endpoint(account)
        response = await client.put(
            f"/api/endpoints/{endpoint.id}",
            json={"retryConfig": {"retryIntervals": [-1]}},
            headers=auth_headers(account),
        )
        assert response.status_code == 422

    async def test_delete_stops_the_receiver_and_manual_retry(
        self, client, session_factory, auth_headers, make_account, make_endpoint
    ):
        account = await make_account()
        endpoint = await make_endpoint(account)
        webhook_id = await post_webhook(client, endpoint)
        await record_result(session_factory, webhook_id, success=False)

        response = await client.delete(f"/api/endpoints/{endpoint.id}", headers=auth_headers(account))
        assert response.status_code == 200
        assert response.json()["data"] == {"id": endpoint.id, "name": "Orders", "isActive": False}

        response = await client.post(f"/webhook/{account.id}/{endpoint.id}", json={"n": 2})
        assert response.status_code == 404

        response = await client.post(f"/api/webhooks/{webhook_id}/retry", headers=auth_headers(account))
        assert response.status_code == 404

        response = await client.get(f"/api/webhooks/{webhook_id}", headers=auth_headers(account))
        assert response.status_code == 200

    async def test_send_test_webhook_signs_and_stores_nothing(
        self, client, queue, session_factory, auth_headers, make_account, make_endpoint
    ):
        from relay.dependencies.services import get_http_client
        from relay.main import app

        account = await make_account()
        endpoint = await make_endpoint(account, custom_headers=[("X-Env", "staging")])
        received: list[httpx.Request] = []

        def destination(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(202, text="accepted")

        async with httpx.AsyncClient(transport=httpx.MockTransport(destination)) as http_client:
            app.dependency_overrides[get_http_client] = lambda: http_client
            response = await client.post(
                f"/api/endpoints/{endpoint.id}/test",
                json={"payload": {"ping": 1}},
                headers=auth_headers(account),
            )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["delivered"] is True
        assert data["responseStatus"] == 202
        assert data["responseBody"] == "accepted"

        request = received[0]
        assert request.content == b'{"ping":1}'
        assert request.headers["x-webhook-id"] == data["webhookId"]
        assert request.headers["x-env"] == "staging"
        assert verify(request.content, request.headers["x-webhook-signature"], endpoint.secret)

        assert queue.jobs == []
        async with session_factory() as db:
            records, total = await DeliveryStore(db).list_for_account(account.id)
            stats = await db.get(Endpoint, endpoint.id)
        assert total == 0
        assert stats.total_requests == 0

    async def test_send_test_webhook_reports_failure(self, client, auth_headers, make_account, make_endpoint):
        from relay.dependencies.services import get_http_client
        from relay.main import app

        account = await make_account()
        endpoint = await make_endpoint(account)

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as http_client:
            app.dependency_overrides[get_http_client] = lambda: http_client
            response = await client.post(f"/api/endpoints/{endpoint.id}/test", headers=auth_headers(account))

        data = response.json()["data"]
        assert data["delivered"] is False
        assert data["responseStatus"] == 503
        assert data["errorMessage"] == "HTTP 503: Service Unavailable"
