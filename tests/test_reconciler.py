"""
Tests for the connection reconciler: idempotent upsert, supersede, repair.
"""

import asyncio
import time
from unittest.mock import patch

import httpx
import pytest

from connectors.errors import PersistenceError
from connectors.google import ADS_SCOPE, ANALYTICS_SCOPE, TAG_MANAGER_SCOPE, GoogleConnector
from connectors.reconciler import ConnectionReconciler
from connectors.schemas import (
    AssetType,
    OwnerKind,
    Platform,
    RepairOutcome,
    RepairScope,
    RepairStatus,
    TokenData,
)

from conftest import recording_transport

ADS_BODY = {"resourceNames": ["customers/111", "customers/222"]}
ANALYTICS_BODY = {
    "accountSummaries": [
        {"account": "accounts/1", "displayName": "Acme", "propertySummaries": [{"property": "properties/9", "displayName": "Web"}]}
    ]
}


def _google_handler(ads=(200, ADS_BODY), analytics=(200, ANALYTICS_BODY)):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "googleads.googleapis.com":
            return httpx.Response(ads[0], json=ads[1])
        if request.url.host == "analyticsadmin.googleapis.com":
            return httpx.Response(analytics[0], json=analytics[1])
        return httpx.Response(404, json={})

    return handler


def _use_google(registry, handler):
    transport, calls = recording_transport(handler)
    registry.register(GoogleConnector(transport=transport))
    return calls


def _token(access="access-1", refresh="refresh-1", scopes=None):
    return TokenData(access_token=access, refresh_token=refresh, scopes=scopes or [ADS_SCOPE])


class TestUpsert:
    @pytest.mark.asyncio
    async def test_identical_upsert_is_idempotent(self, store, registry, make_asset):
        reconciler = ConnectionReconciler(store, registry)
        assets = [make_asset("1"), make_asset("2")]

        first = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), assets)
        second = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), assets)

        assert second.id == first.id
        assert second.updated_at == first.updated_at
        assert second.created_at == first.created_at
        assert len(store.records) == 1
        assert len(store.puts) == 1

    @pytest.mark.asyncio
    async def test_duplicates_are_removed_before_writing(self, store, registry, make_asset):
        reconciler = ConnectionReconciler(store, registry)
        assets = [make_asset("1"), make_asset("1", note="dup"), make_asset("2")]

        conn = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), assets)

        assert [a.id for a in conn.assets] == ["1", "2"]
        assert conn.assets[0].metadata == {"note": "dup"}

    @pytest.mark.asyncio
    async def test_update_in_place_keeps_refresh_token(self, store, registry, make_asset):
        reconciler = ConnectionReconciler(store, registry)
        first = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), [make_asset("1")])

        second = await reconciler.upsert(
            "c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(access="access-2", refresh=None), [make_asset("3")],
        )

        assert second.id == first.id
        assert second.access_token == "access-2"
        assert second.refresh_token == "refresh-1"
        assert [a.id for a in second.assets] == ["3"]
        assert second.updated_at >= first.updated_at
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_new_identity_supersedes_previous_connection(self, store, registry, make_asset):
        reconciler = ConnectionReconciler(store, registry)
        old = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), [make_asset("1")])

        new = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-2", _token("access-2"), [make_asset("2")])

        assert new.id != old.id
        assert store.records[old.id].is_active is False
        assert store.records[new.id].is_active is True
        # never merged
        assert [a.id for a in store.records[new.id].assets] == ["2"]
        assert [a.id for a in store.records[old.id].assets] == ["1"]
        active = await store.get_connection("c1", OwnerKind.CLIENT, Platform.GOOGLE)
        assert active.id == new.id

    @pytest.mark.asyncio
    async def test_other_owners_and_platforms_are_untouched(self, store, registry, make_asset):
        reconciler = ConnectionReconciler(store, registry)
        other_owner = await reconciler.upsert("c2", OwnerKind.CLIENT, Platform.GOOGLE, "g-9", _token(), [])
        admin_same_id = await reconciler.upsert("c1", OwnerKind.ADMIN, Platform.GOOGLE, "g-8", _token(), [])

        await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), [])

        assert store.records[other_owner.id].is_active
        assert store.records[admin_same_id.id].is_active

    @pytest.mark.asyncio
    async def test_reactivating_superseded_identity(self, store, registry):
        reconciler = ConnectionReconciler(store, registry)
        a = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), [])
        b = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-2", _token(), [])

        again = await reconciler.upsert("c1", OwnerKind.CLIENT, Platform.GOOGLE, "g-1", _token(), [])

        assert again.id == a.id and again.is_active
        assert store.records[b.id].is_active is False


class TestRepair:
    @pytest.mark.asyncio
    async def test_repair_converges(self, store, registry, make_connection, make_asset):
        calls = _use_google(registry, _google_handler())
        drifted = make_connection(
            scopes=[ADS_SCOPE, ANALYTICS_SCOPE],
            assets=[make_asset("111"), make_asset("111"), make_asset("stale")],
        )
        await store.put_connection(drifted)
        reconciler = ConnectionReconciler(store, registry)

        first = await reconciler.repair()
        stored = store.records[drifted.id]
        second = await reconciler.repair()

        outcome = first.outcomes[drifted.id]
        assert outcome.status == RepairStatus.REPAIRED
        assert outcome.duplicates_removed == 1
        assert outcome.asset_count == 3
        assert sorted((a.type.value, a.id) for a in stored.assets) == [
            ("ads_account", "111"), ("ads_account", "222"), ("analytics_property", "9"),
        ]
        assert second.outcomes[drifted.id].status == RepairStatus.UNCHANGED
        assert store.records[drifted.id].assets == stored.assets
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_failed_type_keeps_stored_assets(self, store, registry, make_connection, make_asset):
        _use_google(registry, _google_handler(ads=(503, {"error": {"message": "unavailable"}})))
        conn = make_connection(
            scopes=[ADS_SCOPE, ANALYTICS_SCOPE],
            assets=[make_asset("111"), make_asset("old-prop", AssetType.ANALYTICS_PROPERTY)],
        )
        await store.put_connection(conn)

        report = await ConnectionReconciler(store, registry).repair()

        outcome = report.outcomes[conn.id]
        assert outcome.status == RepairStatus.REPAIRED
        assert outcome.errors == ["ads_account: unavailable"]
        ids = {(a.type, a.id) for a in store.records[conn.id].assets}
        assert ids == {(AssetType.ADS_ACCOUNT, "111"), (AssetType.ANALYTICS_PROPERTY, "9")}

    @pytest.mark.asyncio
    async def test_total_fetch_failure_leaves_connection_untouched(self, store, registry, make_connection, make_asset):
        _use_google(registry, lambda request: httpx.Response(401, json={"error": {"message": "expired"}}))
        conn = make_connection(scopes=[ADS_SCOPE], assets=[make_asset("111")])
        await store.put_connection(conn)

        report = await ConnectionReconciler(store, registry).repair()

        assert report.outcomes[conn.id].status == RepairStatus.FAILED
        assert store.records[conn.id] == conn
        assert report.count(RepairStatus.FAILED) == 1

    @pytest.mark.asyncio
    async def test_malformed_provider_rows_do_not_abort_the_batch(self, store, registry, make_connection):
        def handler(request):
            if request.headers["authorization"] == "Bearer access-odd":
                return httpx.Response(200, json={"account": ["unexpected-string"]})
            return httpx.Response(200, json={"account": [{"accountId": "7", "name": "GTM"}]})

        _use_google(registry, handler)
        odd = make_connection(owner_id="c1", access_token="access-odd", scopes=[TAG_MANAGER_SCOPE])
        healthy = make_connection(owner_id="c2", scopes=[TAG_MANAGER_SCOPE])
        await store.put_connection(odd)
        await store.put_connection(healthy)

        report = await ConnectionReconciler(store, registry).repair()

        assert report.outcomes[odd.id].status == RepairStatus.UNCHANGED
        assert report.outcomes[healthy.id].status == RepairStatus.REPAIRED
        assert [a.id for a in store.records[healthy.id].assets] == ["7"]

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_only_that_connection(self, store, registry, make_connection, make_asset):
        _use_google(registry, _google_handler())
        broken = make_connection(owner_id="c1", access_token="access-boom", scopes=[ADS_SCOPE], assets=[make_asset("1")])
        healthy = make_connection(owner_id="c2", scopes=[ADS_SCOPE])
        await store.put_connection(broken)
        await store.put_connection(healthy)
        connector = registry.get(Platform.GOOGLE)
        original = connector.fetch_assets

        async def flaky(access_token, scopes, account=None):
            if access_token == "access-boom":
                raise RuntimeError("connector bug")
            return await original(access_token, scopes, account)

        with patch.object(connector, "fetch_assets", side_effect=flaky):
            report = await ConnectionReconciler(store, registry).repair()

        failed = report.outcomes[broken.id]
        assert failed.status == RepairStatus.FAILED
        assert failed.errors == ["unexpected error: RuntimeError: connector bug"]
        assert store.records[broken.id] == broken
        assert report.outcomes[healthy.id].status == RepairStatus.REPAIRED

    @pytest.mark.asyncio
    async def test_unknown_connection_ids_are_reported(self, store, registry, make_connection):
        _use_google(registry, _google_handler())
        conn = make_connection(scopes=[ADS_SCOPE])
        await store.put_connection(conn)

        report = await ConnectionReconciler(store, registry).repair(RepairScope(connection_ids=[conn.id, "missing"]))

        assert report.outcomes["missing"].status == RepairStatus.NOT_FOUND
        assert report.outcomes[conn.id].status == RepairStatus.REPAIRED

    @pytest.mark.asyncio
    async def test_inactive_connections_are_not_repaired(self, store, registry, make_connection):
        calls = _use_google(registry, _google_handler())
        await store.put_connection(make_connection(scopes=[ADS_SCOPE], is_active=False))

        report = await ConnectionReconciler(store, registry).repair()

        assert report.outcomes == {}
        assert calls == []

    @pytest.mark.asyncio
    async def test_enumeration_failure_raises(self, store, registry):
        store.fail_list = True
        with pytest.raises(PersistenceError):
            await ConnectionReconciler(store, registry).repair()

    @pytest.mark.asyncio
    async def test_cancel_before_start_skips_everything(self, store, registry, make_connection):
        calls = _use_google(registry, _google_handler())
        for i in range(3):
            await store.put_connection(make_connection(owner_id=f"c{i}", scopes=[ADS_SCOPE]))
        cancel = asyncio.Event()
        cancel.set()

        report = await ConnectionReconciler(store, registry).repair(cancel_event=cancel)

        assert report.cancelled
        assert report.count(RepairStatus.SKIPPED) == 3
        assert calls == []

    @pytest.mark.asyncio
    async def test_passed_deadline_skips_everything(self, store, registry, make_connection):
        _use_google(registry, _google_handler())
        await store.put_connection(make_connection(scopes=[ADS_SCOPE]))

        report = await ConnectionReconciler(store, registry).repair(deadline=time.monotonic() - 1)

        assert report.cancelled
        assert report.summary()["skipped"] == 1

    @pytest.mark.asyncio
    async def test_cancel_mid_run_reports_partial_completion(self, store, registry, make_connection):
        for i in range(4):
            await store.put_connection(make_connection(owner_id=f"c{i}"))
        reconciler = ConnectionReconciler(store, registry)
        cancel = asyncio.Event()

        async def fake_repair(conn):
            cancel.set()
            return RepairOutcome(connection_id=conn.id, platform=conn.platform, status=RepairStatus.UNCHANGED)

        with patch.object(reconciler, "_repair_one", side_effect=fake_repair):
            report = await reconciler.repair(concurrency=1, cancel_event=cancel)

        assert report.cancelled
        assert report.count(RepairStatus.UNCHANGED) == 1
        assert report.count(RepairStatus.SKIPPED) == 3

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, registry, make_connection):
        for i in range(6):
            await store.put_connection(make_connection(owner_id=f"c{i}"))
        reconciler = ConnectionReconciler(store, registry)
        running = 0
        peak = 0

        async def fake_repair(conn):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return RepairOutcome(connection_id=conn.id, platform=conn.platform, status=RepairStatus.UNCHANGED)

        with patch.object(reconciler, "_repair_one", side_effect=fake_repair):
            report = await reconciler.repair(concurrency=2)

        assert peak == 2
        assert report.count(RepairStatus.UNCHANGED) == 6

    @pytest.mark.asyncio
    async def test_repair_completed_onboarding_scopes_to_completed_clients(
        self, store, registry, onboarding, make_connection
    ):
        _use_google(registry, _google_handler())
        done = onboarding.add_link("done", client_id="client-done")
        (await onboarding.get_or_create_request_for_link(done)).status = "completed"
        onboarding.add_link("pending", client_id="client-pending")
        mine = make_connection(owner_id="client-done", scopes=[ADS_SCOPE])
        other = make_connection(owner_id="client-pending", scopes=[ADS_SCOPE])
        await store.put_connection(mine)
        await store.put_connection(other)

        report = await ConnectionReconciler(store, registry, onboarding=onboarding).repair_completed_onboarding()

        assert set(report.outcomes) == {mine.id}

    @pytest.mark.asyncio
    async def test_repair_owner(self, store, registry, make_connection):
        _use_google(registry, _google_handler())
        mine = make_connection(owner_id="client-7", scopes=[ADS_SCOPE])
        await store.put_connection(mine)
        await store.put_connection(make_connection(owner_id="client-8", scopes=[ADS_SCOPE]))

        report = await ConnectionReconciler(store, registry).repair_owner("client-7", OwnerKind.CLIENT)

        assert list(report.outcomes) == [mine.id]

    @pytest.mark.asyncio
    async def test_repair_completed_onboarding_for_one_admin(self, store, registry, onboarding, make_connection):
        _use_google(registry, _google_handler())
        mine = onboarding.add_link("mine", client_id="client-mine")
        theirs = onboarding.add_link("theirs", client_id="client-theirs", admin_id="admin-2")
        for link in (mine, theirs):
            (await onboarding.get_or_create_request_for_link(link)).status = "completed"
        kept = make_connection(owner_id="client-mine", scopes=[ADS_SCOPE])
        await store.put_connection(kept)
        await store.put_connection(make_connection(owner_id="client-theirs", scopes=[ADS_SCOPE]))

        reconciler = ConnectionReconciler(store, registry, onboarding=onboarding)
        report = await reconciler.repair_completed_onboarding("admin-1")

        assert list(report.outcomes) == [kept.id]


class TestRepairForAdmin:
    @pytest.mark.asyncio
    async def test_covers_own_and_onboarded_client_connections(self, store, registry, onboarding, make_connection):
        calls = _use_google(registry, _google_handler())
        onboarding.add_link("mine", client_id="client-1")
        onboarding.add_link("theirs", client_id="client-2", admin_id="admin-2")
        own = make_connection(owner_id="admin-1", owner_kind=OwnerKind.ADMIN, scopes=[ADS_SCOPE])
        client = make_connection(owner_id="client-1", scopes=[ADS_SCOPE])
        foreign = make_connection(owner_id="client-2", scopes=[ADS_SCOPE])
        foreign_admin = make_connection(owner_id="admin-2", owner_kind=OwnerKind.ADMIN, scopes=[ADS_SCOPE])
        for conn in (own, client, foreign, foreign_admin):
            await store.put_connection(conn)

        report = await ConnectionReconciler(store, registry, onboarding=onboarding).repair_for_admin("admin-1")

        assert set(report.outcomes) == {own.id, client.id}
        assert len(calls) == 2
        assert store.records[foreign.id] == foreign

    @pytest.mark.asyncio
    async def test_owner_kind_narrows_and_foreign_ids_are_not_found(self, store, registry, onboarding, make_connection):
        _use_google(registry, _google_handler())
        onboarding.add_link("mine", client_id="client-1")
        own = make_connection(owner_id="admin-1", owner_kind=OwnerKind.ADMIN, scopes=[ADS_SCOPE])
        client = make_connection(owner_id="client-1", scopes=[ADS_SCOPE])
        foreign = make_connection(owner_id="client-2", scopes=[ADS_SCOPE])
        for conn in (own, client, foreign):
            await store.put_connection(conn)
        reconciler = ConnectionReconciler(store, registry, onboarding=onboarding)

        clients_only = await reconciler.repair_for_admin("admin-1", owner_kind=OwnerKind.CLIENT)
        by_id = await reconciler.repair_for_admin("admin-1", connection_ids=[own.id, foreign.id])

        assert list(clients_only.outcomes) == [client.id]
        assert by_id.outcomes[own.id].status == RepairStatus.REPAIRED
        assert by_id.outcomes[foreign.id].status == RepairStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_admin_without_clients_or_connections_gets_empty_report(self, store, registry, onboarding, make_connection):
        calls = _use_google(registry, _google_handler())
        await store.put_connection(make_connection(owner_id="client-2", scopes=[ADS_SCOPE]))

        report = await ConnectionReconciler(store, registry, onboarding=onboarding).repair_for_admin("admin-9")

        assert report.outcomes == {}
        assert calls == []
