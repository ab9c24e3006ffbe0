"""Tests for the registry HTTP API — registration and the settlement webhook pipeline."""

import asyncio
import json

import pytest

from posregistry.settlement import SettlementStatus
from posregistry.storage import new_agent_record
from posregistry.webhook import SIGNATURE_HEADER

from conftest import signed_webhook


def settlement(did, ref="tx1", outcome="success", amount="2.0", **extra):
    return {"x402TxnId": ref, "agentDid": did, "taskOutcome": outcome,
            "paymentAmount": amount, **extra}


async def _register(client, registration_body, **overrides):
    resp = await client.post("/api/agents", json=registration_body(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()["agent"]


# ─── Registration ─────────────────────────────────────────────────

class TestRegister:
    @pytest.mark.asyncio
    async def test_register(self, client, registration_body, owner):
        _, address, did = owner
        resp = await client.post("/api/agents", json=registration_body())
        assert resp.status_code == 201
        agent = resp.json()["agent"]
        assert agent["did"] == did
        assert agent["ownerPubkey"] == address
        assert agent["reputation"] == 0.0
        assert agent["disclosure"] == "public"
        assert agent["capabilities"] == {
            "skills": ["invoicing", "payments"], "successRate": 0.9, "latencyMs": 120.0,
        }
        assert agent["metadataCid"] and agent["proofCid"]

    @pytest.mark.asyncio
    async def test_supplied_cids_kept(self, client, registration_body):
        agent = await _register(client, registration_body,
                                metadataCid="QmMeta", proofCid="QmProof")
        assert agent["metadataCid"] == "QmMeta"
        assert agent["proofCid"] == "QmProof"

    @pytest.mark.asyncio
    async def test_default_disclosure(self, client, registration_body):
        body = registration_body()
        del body["disclosure"]
        resp = await client.post("/api/agents", json=body)
        assert resp.json()["agent"]["disclosure"] == "selective"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_and_not_stored(self, client, registration_body, store, owner):
        body = registration_body()
        body["message"] = body["message"] + " (tampered)"
        resp = await client.post("/api/agents", json=body)
        assert resp.status_code == 401
        assert resp.json()["error"]["kind"] == "authentication_error"
        assert await store.get_agent(owner[2]) is None

    @pytest.mark.asyncio
    async def test_signature_from_other_wallet(self, client, registration_body, store):
        from posregistry.signature import generate_wallet
        _, other = generate_wallet()
        did = f"did:sol:devnet:{other}"
        resp = await client.post("/api/agents", json=registration_body(did=did))
        assert resp.status_code == 401
        assert await store.get_agent(did) is None

    @pytest.mark.asyncio
    async def test_undecodable_signature_is_401(self, client, registration_body):
        resp = await client.post("/api/agents", json=registration_body(signature="0OIl"))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("did", ["did:sol", "did:sol:devnet:", "nocolons"])
    async def test_malformed_did_rejected_before_signature(self, client, registration_body,
                                                           did, monkeypatch):
        calls = []
        monkeypatch.setattr("posregistry.api.verify_wallet_signature",
                            lambda *a: calls.append(a) or True)
        resp = await client.post("/api/agents", json=registration_body(did=did))
        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "validation_error"
        assert calls == []

    @pytest.mark.asyncio
    async def test_duplicate_did(self, client, registration_body):
        await _register(client, registration_body)
        resp = await client.post("/api/agents", json=registration_body())
        assert resp.status_code == 409
        assert resp.json()["error"]["kind"] == "conflict"

    @pytest.mark.asyncio
    async def test_duplicate_did_skips_pinning_and_attestation(self, client, registration_body, app):
        from posregistry.services import AttestationService, PinningService

        calls = []

        class RecordingPinning(PinningService):
            async def pin(self, payload):
                calls.append("pin")
                return "QmPinned"

        class RecordingAttestation(AttestationService):
            async def attest(self, request):
                calls.append("attest")
                return "QmProof"

        app.state.pinning = RecordingPinning()
        app.state.attestation = RecordingAttestation()
        await _register(client, registration_body)
        assert calls == ["pin", "attest"]

        resp = await client.post("/api/agents", json=registration_body())
        assert resp.status_code == 409
        assert calls == ["pin", "attest"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"name": ""},
        {"disclosure": "zk-selective"},
        {"capabilities": {"skills": [], "successRate": 0.5, "latencyMs": 1}},
        {"capabilities": {"skills": ["a"], "successRate": 1.5, "latencyMs": 1}},
        {"capabilities": {"skills": ["a"], "successRate": 0.5, "latencyMs": -1}},
        {"message": ""},
    ])
    async def test_schema_violation(self, client, registration_body, overrides):
        resp = await client.post("/api/agents", json=registration_body(**overrides))
        assert resp.status_code == 400
        err = resp.json()["error"]
        assert err["kind"] == "validation_error"
        assert err["details"]["issues"]

    @pytest.mark.asyncio
    async def test_missing_fields(self, client):
        resp = await client.post("/api/agents", json={"did": "did:sol:devnet:x"})
        assert resp.status_code == 400


class TestReadAgents:
    @pytest.mark.asyncio
    async def test_list_newest_first(self, client, store):
        for i in range(3):
            await store.create_agent(new_agent_record(
                did=f"did:sol:devnet:K{i}", owner_pubkey=f"K{i}", name=f"Bot {i}",
                capabilities={"skills": ["s"], "success_rate": 0.5, "latency_ms": 1},
            ))
        resp = await client.get("/api/agents")
        assert resp.status_code == 200
        assert [a["did"] for a in resp.json()["agents"]] == [
            "did:sol:devnet:K2", "did:sol:devnet:K1", "did:sol:devnet:K0",
        ]

    @pytest.mark.asyncio
    async def test_list_empty(self, client):
        resp = await client.get("/api/agents")
        assert resp.json() == {"agents": []}

    @pytest.mark.asyncio
    async def test_get_unknown(self, client):
        resp = await client.get("/api/agents/did:sol:devnet:nobody")
        assert resp.status_code == 404
        assert resp.json()["error"]["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_get_with_events(self, client, registration_body, gateway, post_settlement):
        agent = await _register(client, registration_body)
        for ref in ("a", "b"):
            gateway.set_status(ref, SettlementStatus.FINALIZED)
            await post_settlement(settlement(agent["did"], ref=ref, amount="0.1"))

        resp = await client.get(f"/api/agents/{agent['did']}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["agent"]["did"] == agent["did"]
        assert [e["reference"] for e in data["events"]] == ["b", "a"]
        assert data["events"][0]["agentId"] == agent["id"]


# ─── Settlement webhook ───────────────────────────────────────────

class TestReputationUpdate:
    @pytest.mark.asyncio
    async def test_end_to_end(self, client, registration_body, gateway, post_settlement):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)

        resp = await post_settlement(settlement(agent["did"], description="invoice paid"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["applied"] is True
        assert data["agent"]["reputation"] == pytest.approx(0.1)
        assert data["event"]["delta"] == pytest.approx(0.1)
        assert data["event"]["reference"] == "tx1"
        assert data["event"]["description"] == "invoice paid"

        replay = await post_settlement(settlement(agent["did"], description="invoice paid"))
        assert replay.status_code == 200
        assert replay.json()["applied"] is False
        assert replay.json()["agent"]["reputation"] == pytest.approx(0.1)
        assert replay.json()["event"] == data["event"]

        history = (await client.get(f"/api/reputation/{agent['did']}")).json()
        assert history["score"] == pytest.approx(0.1)
        assert len(history["events"]) == 1

    @pytest.mark.asyncio
    async def test_replay_for_seeded_agent(self, client, store, gateway, post_settlement):
        did = "did:sol:devnet:Abc123"
        await store.create_agent(new_agent_record(
            did=did, owner_pubkey="Abc123", name="Scenario",
            capabilities={"skills": ["s"], "success_rate": 0.9, "latency_ms": 1},
        ))
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        first = await post_settlement(settlement(did, amount="2.0"))
        second = await post_settlement(settlement(did, amount="2.0"))
        assert first.json()["agent"]["reputation"] == pytest.approx(0.1)
        assert second.json()["agent"]["reputation"] == pytest.approx(0.1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome,amount,expected", [
        ("success", "1.0", 0.1),
        ("success", "-5", 0.005),
        ("partial", "1.0", 0.05),
        ("success", 0.5, 0.05),
    ])
    async def test_delta_from_outcome(self, client, registration_body, gateway, post_settlement,
                                      outcome, amount, expected):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        resp = await post_settlement(settlement(agent["did"], outcome=outcome, amount=amount))
        assert resp.json()["event"]["delta"] == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_failed_outcome_floors_at_zero(self, client, registration_body, gateway,
                                                  post_settlement):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        resp = await post_settlement(settlement(agent["did"], outcome="failed"))
        assert resp.json()["event"]["delta"] == pytest.approx(-0.05)
        assert resp.json()["agent"]["reputation"] == 0.0

    @pytest.mark.asyncio
    async def test_missing_signature(self, client, registration_body, gateway, post_settlement, store):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        resp = await post_settlement(settlement(agent["did"]),
                                     headers={"Content-Type": "application/json"})
        assert resp.status_code == 401
        assert "Missing" in resp.json()["error"]["message"]
        assert (await store.get_agent(agent["did"]))["reputation"] == 0.0

    @pytest.mark.asyncio
    async def test_invalid_signature_never_reaches_gateway(self, client, registration_body,
                                                           gateway, post_settlement, store):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        resp = await post_settlement(settlement(agent["did"]), secret="wrong-secret")
        assert resp.status_code == 401
        assert gateway.lookups == []
        assert (await store.get_agent(agent["did"]))["reputation"] == 0.0

    @pytest.mark.asyncio
    async def test_tampered_body(self, client, registration_body, gateway):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        _, headers = signed_webhook(settlement(agent["did"], amount="0.1"))
        tampered = json.dumps(settlement(agent["did"], amount="1000"), separators=(",", ":"))
        resp = await client.post("/api/reputation/update", content=tampered, headers=headers)
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_non_ascii_signature_header(self, client, registration_body, gateway, store):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        content, _ = signed_webhook(settlement(agent["did"]))
        resp = await client.post(
            "/api/reputation/update", content=content,
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: b"\xe9abc"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["kind"] == "authentication_error"
        assert gateway.lookups == []
        assert (await store.get_agent(agent["did"]))["reputation"] == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [SettlementStatus.PENDING, SettlementStatus.NOT_FOUND])
    async def test_unconfirmed_settlement(self, client, registration_body, gateway,
                                          post_settlement, store, status):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", status)
        resp = await post_settlement(settlement(agent["did"]))
        assert resp.status_code == 409
        err = resp.json()["error"]
        assert err["kind"] == "conflict"
        assert err["details"]["status"] == status.value
        assert (await store.get_agent(agent["did"]))["reputation"] == 0.0
        assert await store.list_events(agent["id"]) == []

    @pytest.mark.asyncio
    async def test_replay_after_other_settlement(self, client, registration_body, gateway,
                                                 post_settlement):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        gateway.set_status("tx2", SettlementStatus.FINALIZED)

        first = (await post_settlement(settlement(agent["did"], ref="tx1"))).json()
        await post_settlement(settlement(agent["did"], ref="tx2", amount="0.5"))
        replay = (await post_settlement(settlement(agent["did"], ref="tx1"))).json()

        assert replay["applied"] is False
        assert replay["agent"] == first["agent"]
        assert replay["event"] == first["event"]
        assert first["event"]["scoreAfter"] == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_resubmit_after_finalization(self, client, registration_body, gateway,
                                               post_settlement):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.PENDING)
        assert (await post_settlement(settlement(agent["did"]))).status_code == 409
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        resp = await post_settlement(settlement(agent["did"]))
        assert resp.status_code == 200
        assert resp.json()["applied"] is True

    @pytest.mark.asyncio
    async def test_unknown_agent(self, client, gateway, post_settlement):
        gateway.set_status("tx1", SettlementStatus.FINALIZED)
        resp = await post_settlement(settlement("did:sol:devnet:nobody"))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"agentDid": "did:sol:devnet:x", "taskOutcome": "success", "paymentAmount": "1"},
        {"x402TxnId": "tx1", "agentDid": "did:sol:devnet:x", "taskOutcome": "great",
         "paymentAmount": "1"},
        {"x402TxnId": "", "agentDid": "did:sol:devnet:x", "taskOutcome": "success",
         "paymentAmount": "1"},
        [1, 2, 3],
    ])
    async def test_schema_violation(self, client, gateway, post_settlement, payload):
        resp = await post_settlement(payload)
        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "validation_error"
        assert gateway.lookups == []

    @pytest.mark.asyncio
    async def test_not_json(self, client):
        resp = await client.post("/api/reputation/update", content=b"not json",
                                 headers={SIGNATURE_HEADER: "00"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_concurrent_updates_no_lost_update(self, client, registration_body, gateway,
                                                     post_settlement, store):
        agent = await _register(client, registration_body)
        refs = [f"tx{i}" for i in range(8)]
        for ref in refs:
            gateway.set_status(ref, SettlementStatus.FINALIZED)

        responses = await asyncio.gather(*[
            post_settlement(settlement(agent["did"], ref=ref, amount="0.5")) for ref in refs
        ])
        assert all(r.status_code == 200 for r in responses)
        final = (await store.get_agent(agent["did"]))["reputation"]
        assert final == pytest.approx(min(1.0, 8 * 0.05))
        assert len(await store.list_events(agent["id"])) == 8


class TestReputationHistory:
    @pytest.mark.asyncio
    async def test_unknown(self, client):
        resp = await client.get("/api/reputation/did:sol:devnet:nobody")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_fresh_agent(self, client, registration_body):
        agent = await _register(client, registration_body)
        resp = await client.get(f"/api/reputation/{agent['did']}")
        assert resp.json() == {"did": agent["did"], "score": 0.0, "events": []}


class TestHealthAndHeaders:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["database"] == "connected"

    @pytest.mark.asyncio
    async def test_request_id_header(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_internal_errors_do_not_leak(self, client, registration_body, gateway,
                                               post_settlement, app):
        agent = await _register(client, registration_body)
        gateway.set_status("tx1", SettlementStatus.FINALIZED)

        from posregistry.errors import InternalError

        class BrokenLedger:
            async def apply(self, *a, **kw):
                raise InternalError("connection pool exhausted at 10.0.0.5")

        app.state.ledger = BrokenLedger()
        resp = await post_settlement(settlement(agent["did"]))
        assert resp.status_code == 500
        assert resp.json() == {"error": {"kind": "internal_error", "message": "Internal server error"}}

    @pytest.mark.asyncio
    async def test_oversized_body(self, client):
        resp = await client.post("/api/reputation/update", content=b"x" * 70_000,
                                 headers={"Content-Type": "application/json"})
        assert resp.status_code == 413
        assert resp.json()["error"]["kind"] == "payload_too_large"
