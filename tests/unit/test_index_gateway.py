"""Tests for IndexGateway degradation and entity normalisation."""

import json
from datetime import timedelta

import httpx
import pytest

from eduverse_engine.common.exceptions import IndexUnavailableError
from eduverse_engine.index.gateway import IndexGateway, IndexQuery
from eduverse_engine.index.normalize import normalize, parse_timestamp
from eduverse_engine.index.transport import GraphQLIndexTransport
from eduverse_engine.ledger.operations import ViewKind
from eduverse_engine.progress.models import ProgressSnapshot
from conftest import FAST
from fakes import T0


@pytest.fixture
def gateway(index, scheduler):
    return IndexGateway(index, scheduler, backoff=FAST)


class TestQuery:
    async def test_license_view(self, gateway, ledger):
        ledger.seed_license("0xabc", "C1", T0 + timedelta(days=30))
        view = await gateway.query(IndexQuery("0xabc", "C1", ViewKind.LICENSE))
        assert not view.degraded
        assert view.version_marker == 4
        assert view.data.expires_at == T0 + timedelta(days=30)
        assert view.data.is_active

    async def test_missing_license_is_none(self, gateway):
        view = await gateway.query(IndexQuery("0xabc", "C1", ViewKind.LICENSE))
        assert view.data is None
        assert not view.degraded

    async def test_progress_view(self, gateway, ledger):
        ledger.seed_progress("0xabc", "C1", started=["s1", "s2"], completed=["s1"])
        view = await gateway.query(IndexQuery("0xabc", "C1", ViewKind.PROGRESS))
        snapshot = view.data
        assert [s.section_id for s in snapshot.sections] == ["s1", "s2", "s3", "s4"]
        assert snapshot.row("s1").is_completed
        assert not snapshot.row("s2").is_completed
        assert snapshot.row("s3") is None

    async def test_indexing_errors_mark_degraded(self, gateway, index):
        index.degraded = True
        view = await gateway.query(IndexQuery("0xabc", "C1", ViewKind.LICENSE))
        assert view.degraded
        assert view.version_marker == 4

    async def test_unavailable_returns_empty_degraded(self, gateway, index):
        index.unavailable = True
        view = await gateway.query(IndexQuery("0xabc", "C1", ViewKind.PROGRESS))
        assert view.degraded
        assert view.version_marker is None
        assert isinstance(view.data, ProgressSnapshot)
        assert view.data.rows == {}
        assert index.calls == 3
        assert view.errors == ("index down",)

    async def test_graphql_errors_mark_degraded(self, scheduler):
        class ErroringIndex:
            async def execute(self, kind, subject_id, resource_id):
                return {"data": {"license": None}, "errors": [{"message": "store error"}]}

            async def aclose(self):
                pass

        view = await IndexGateway(ErroringIndex(), scheduler).query(IndexQuery("0xabc", "C1", ViewKind.LICENSE))
        assert view.degraded
        assert view.errors == ("store error",)

    async def test_malformed_entities_degrade(self, scheduler):
        class MalformedIndex:
            async def execute(self, kind, subject_id, resource_id):
                return {"data": {"sectionProgresses": [{"startedAt": "1"}]}, "errors": []}

            async def aclose(self):
                pass

        view = await IndexGateway(MalformedIndex(), scheduler).query(IndexQuery("0xabc", "C1", ViewKind.PROGRESS))
        assert view.degraded
        assert view.data.rows == {}


class TestNormalize:
    def test_parse_timestamp(self):
        assert parse_timestamp("0") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(str(int(T0.timestamp()))) == T0

    def test_empty_ledger_struct_is_no_license(self):
        raw = {"license": {"student": "0xabc", "courseId": "C1", "expiryTimestamp": "0", "isActive": False}}
        assert normalize(ViewKind.LICENSE, raw, "0xabc", "C1") is None

    def test_credential(self):
        raw = {"certificate": {"recipientAddress": "0xabc", "issuedAt": "1735689600",
                               "courses": [{"courseId": "C1"}, {"courseId": 2}]}}
        credential = normalize(ViewKind.CREDENTIAL, raw, "0xabc", "*")
        assert credential.completed_resource_ids == frozenset({"C1", "2"})
        assert credential.issued_at == T0

    def test_unstarted_rows_dropped(self):
        raw = {"sectionProgresses": [{"sectionId": "s1", "startedAt": "0"}]}
        assert normalize(ViewKind.PROGRESS, raw, "0xabc", "C1").rows == {}


class TestGraphQLIndexTransport:
    async def test_unwraps_singular_entities(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {"license": [{"courseId": "C1"}], "_meta": {}}})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = GraphQLIndexTransport("http://index/graphql", http=http)
        body = await transport.execute(ViewKind.LICENSE, "0xABC", "C1")
        assert body["data"]["license"] == {"courseId": "C1"}
        assert seen["body"]["variables"] == {"subject": "0xabc", "resource": "C1"}
        await transport.aclose()

    async def test_empty_list_becomes_none(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"data": {"certificate": []}})
        ))
        body = await GraphQLIndexTransport("http://index/graphql", http=http).execute(
            ViewKind.CREDENTIAL, "0xabc", "*",
        )
        assert body["data"]["certificate"] is None
        assert body["errors"] == []

    async def test_http_error_is_unavailable(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502)))
        with pytest.raises(IndexUnavailableError):
            await GraphQLIndexTransport("http://index/graphql", http=http).execute(
                ViewKind.LICENSE, "0xabc", "C1",
            )
