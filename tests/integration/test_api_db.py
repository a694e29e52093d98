from __future__ import annotations

import hashlib
import hmac
import json
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from factories import assign, make_business, make_quote, utc_now
from lead_engine.models import Business, ClaimCampaign, JobRun


def _issue(client, admin_headers, business_id) -> str:
    response = client.post(
        "/api/admin/claim-campaigns",
        json={"business_ids": [str(business_id)]},
        headers=admin_headers,
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["summary"]["successful"] == 1
    return payload["campaigns"][0]["claim_token"]


def test_health_and_security_headers(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Frame-Options"] == "DENY"


def test_quote_intake_routes_to_covering_businesses(client, db_session: Session, monkeypatch):
    monkeypatch.setattr("lead_engine.routing.geocode", lambda address: None)
    business = make_business(db_session)
    db_session.commit()

    response = client.post(
        "/api/quotes",
        json={
            "customer_name": "Jane Customer",
            "customer_email": "jane@example.com",
            "service_type": "roofing",
            "service_city": "Denver",
            "service_state": "Colorado",
        },
    )
    assert response.status_code == 201
    assert response.json()["assigned"] == [str(business.id)]

    rejected = client.post("/api/quotes", json={"customer_name": "X", "customer_email": "x@y.com", "service_type": "roofing"})
    assert rejected.status_code == 422


def test_dealer_reveal_flow(client, db_session: Session, admin_headers):
    business = make_business(db_session)
    quote = make_quote(db_session)
    assign(db_session, quote, business)
    db_session.commit()
    dealer = {"X-Business-Id": str(business.id)}

    assert client.get("/api/dealer/leads").status_code == 401

    [item] = client.get("/api/dealer/leads", headers=dealer).json()
    assert item["contact"]["email"] != "jane@example.com"
    assert item["status"] == "viewed"

    broke = client.post(f"/api/dealer/leads/{quote.id}/reveal", headers=dealer)
    assert broke.status_code == 402
    assert broke.json()["detail"] == "Not enough lead credits to reveal this lead"

    assert client.post("/api/billing/credits", json={"business_id": str(business.id), "credits": 2}).status_code == 401
    credited = client.post(
        "/api/billing/credits",
        json={"business_id": str(business.id), "credits": 2},
        headers=admin_headers,
    )
    assert credited.json()["lead_credits"] == 2

    revealed = client.post(f"/api/dealer/leads/{quote.id}/reveal", headers=dealer)
    assert revealed.status_code == 200
    assert revealed.json()["contact"]["email"] == "jane@example.com"
    assert revealed.json()["credits_remaining"] == 1
    again = client.post(f"/api/dealer/leads/{quote.id}/reveal", headers=dealer)
    assert again.json()["charged"] is False
    assert again.json()["credits_remaining"] == 1

    updated = client.patch(f"/api/dealer/leads/{quote.id}", json={"status": "won", "quoted_price": "900.00"}, headers=dealer)
    assert updated.status_code == 200
    assert updated.json()["status"] == "won"
    assert updated.json()["quoted_price"] == 900.0


def test_claim_page_flow(client, db_session: Session, admin_headers):
    business = make_business(db_session, "Claim Me", is_claimed=False)
    db_session.commit()

    assert client.post("/api/admin/claim-campaigns", json={"business_ids": [str(business.id)]}).status_code == 401
    token = _issue(client, admin_headers, business.id)

    page = client.get(f"/api/claim/{token}")
    assert page.status_code == 200
    assert page.json()["business"]["name"] == "Claim Me"
    assert page.json()["campaign"]["claim_url"].endswith(f"/claim/{token}")

    tracked = client.post(f"/api/claim/{token}/track", json={"action": "link_clicked"})
    assert tracked.json() == {"success": True, "state": "clicked"}
    assert client.post(f"/api/claim/{token}/track", json={"action": "teleported"}).status_code == 422

    completed = client.post(f"/api/claim/{token}/complete", json={})
    assert completed.status_code == 200
    assert completed.json()["state"] == "claimed"

    assert client.get(f"/api/claim/{token}").status_code == 409
    assert client.post(f"/api/claim/{token}/complete", json={}).status_code == 409
    assert client.post(f"/api/claim/{token}/track", json={"action": "email_opened"}).status_code == 409
    assert client.get("/api/claim/unknown1").status_code == 404

    db_session.expire_all()
    assert db_session.get(Business, business.id).is_claimed is True


def test_expired_claim_link_is_gone(client, db_session: Session):
    business = make_business(db_session, "Late Co", is_claimed=False)
    db_session.add(ClaimCampaign(business_id=business.id, claim_token="late0001", expires_at=utc_now() - timedelta(days=1)))
    db_session.commit()

    response = client.get("/api/claim/late0001")
    assert response.status_code == 410
    assert response.json()["detail"] == "This claim link has expired"
    assert client.post("/api/claim/late0001/track", json={"action": "link_clicked"}).status_code == 410


def test_outreach_webhook(client, db_session: Session, admin_headers, monkeypatch):
    business = make_business(db_session, "Hooked Co", is_claimed=False, email="owner@hooked.com")
    db_session.commit()
    token = _issue(client, admin_headers, business.id)

    opened = client.post(
        "/api/webhooks/outreach",
        json={"type": "email.opened", "data": {"to": ["owner@hooked.com"], "metadata": {"claim_token": token}}},
    )
    assert opened.json() == {"success": True, "event": "opened", "state": "opened"}

    unknown = client.post(
        "/api/webhooks/outreach",
        json={"type": "email.clicked", "data": {"link": "https://x.test/claim/nosuch99"}},
    )
    assert unknown.status_code == 200
    assert "ignored" in unknown.json()

    assert client.post("/api/webhooks/outreach", json={"type": "email.delivered"}).json()["ignored"] == "unknown event"

    monkeypatch.setenv("OUTREACH_WEBHOOK_SECRET", "hook-secret")
    body = json.dumps({"type": "email.bounced", "metadata": {"claim_token": token}}).encode()
    assert client.post("/api/webhooks/outreach", content=body).status_code == 401
    signature = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()
    signed = client.post(
        "/api/webhooks/outreach",
        content=body,
        headers={"X-Outreach-Signature": signature, "Content-Type": "application/json"},
    )
    assert signed.json()["state"] == "bounced"

    monkeypatch.delenv("OUTREACH_WEBHOOK_SECRET")
    assert client.post(f"/api/claim/{token}/complete", json={}).status_code == 200
    late = client.post("/api/webhooks/outreach", json={"type": "email.opened", "metadata": {"claim_token": token}})
    assert late.status_code == 200
    assert late.json()["ignored"] == "This business has already been claimed"


def test_admin_batch_endpoints_record_job_runs(client, db_session: Session, admin_headers):
    make_business(db_session, "Twin Co", is_claimed=False, reviews=3)
    make_business(db_session, "Twin Co", is_claimed=False)
    make_business(db_session, "Needs Campaign", is_claimed=False, email="hi@needs.com")
    db_session.commit()

    preview = client.get("/api/admin/duplicates", params={"key": "name_location"}, headers=admin_headers)
    assert preview.status_code == 200
    assert preview.json()["groups"] == 1

    applied = client.post("/api/admin/duplicates/apply", json={"key": "name_location"}, headers=admin_headers)
    assert applied.json()["deleted"] == 1
    assert client.get("/api/admin/duplicates", headers=admin_headers).json()["groups"] == 0

    backfilled = client.post("/api/admin/claim-campaigns/backfill", json={}, headers=admin_headers)
    assert backfilled.json()["issued"] == 1
    assert client.post("/api/admin/claim-campaigns/expire", headers=admin_headers).json()["expired"] == 0
    assert client.post("/api/admin/contacts/consolidate", json={}, headers=admin_headers).status_code == 200

    stats = client.get("/api/admin/claim-campaigns/stats", headers=admin_headers).json()
    assert stats["with_tokens"] == 1

    job_names = {row.job_name for row in db_session.execute(select(JobRun)).scalars()}
    assert {"merge_duplicate_businesses", "backfill_auto_campaigns", "expire_claim_campaigns", "consolidate_claim_contacts"} <= job_names
    jobs = client.get("/api/jobs").json()
    assert all(job["status"] == "success" for job in jobs)


def test_admin_business_creation_issues_auto_campaign(client, admin_headers):
    response = client.post(
        "/api/admin/businesses",
        json={"name": "Fresh Listing", "city": "Denver", "state": "CO", "email": "owner@fresh.com"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    payload = response.json()
    assert payload["business"]["service_radius_miles"] == 25
    assert payload["campaign"]["state"] == "created"

    metrics = client.get("/api/metrics").json()
    assert metrics["businesses"]["total"] == 1
    assert metrics["claim_campaigns"]["open"] == 1
    assert metrics["claim_contacts"]["total"] == 1
