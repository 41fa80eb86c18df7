"""Tests for docbridge.opener: candidate names, open requests, roots."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from hypothesis import given
from hypothesis import strategies as st

from docbridge.exceptions import UserInputError
from docbridge.models import DocumentRef, FailureKind
from docbridge.opener import (
    REMOTE_DOCUMENT_MESSAGE,
    TIMEOUT_MESSAGE,
    OpenRequestClient,
    build_candidate_names,
    validate_root_path,
)

BASE = "http://companion.test"
REPORT = DocumentRef(title="Report", revision="Rev.1", file_type="pdf", path="/A/B")


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request: {request.method} {request.url}")


# ---------------------------------------------------------------------------
# Candidate names
# ---------------------------------------------------------------------------


class TestBuildCandidateNames:
    def test_full_document(self) -> None:
        assert build_candidate_names("Report", "Rev.1", "pdf") == [
            "Report Rev.1.pdf",
            "Report.pdf",
            "Report Rev.1",
            "Report",
        ]

    def test_leading_dot_in_extension(self) -> None:
        assert build_candidate_names("Report", "", ".pdf") == ["Report.pdf", "Report"]

    def test_no_extension(self) -> None:
        assert build_candidate_names("Report", "B", "") == ["Report B", "Report"]

    def test_title_only(self) -> None:
        assert build_candidate_names("Report", "", "") == ["Report"]

    def test_empty_title(self) -> None:
        assert build_candidate_names("", "A", "pdf") == []

    @given(
        st.text(min_size=1, max_size=20),
        st.text(max_size=10),
        st.text(max_size=5),
    )
    def test_no_duplicates_and_title_last(self, title: str, revision: str, ext: str) -> None:
        names = build_candidate_names(title, revision, ext)
        assert len(names) == len(set(names))
        assert names[-1] == title
        assert all(name.startswith(title) for name in names)


class TestValidateRootPath:
    @pytest.mark.parametrize(
        "path",
        ["C:\\Docs", "d:\\", "  E:\\Projects\\2024  ", "\\\\server\\share", "\\\\nas\\docs\\sub"],
    )
    def test_accepts(self, path: str) -> None:
        assert validate_root_path(path) == path.strip()

    @pytest.mark.parametrize(
        "path",
        ["", "   ", "Docs", "/home/user", "C:Docs", "\\\\server", "http://x/y"],
    )
    def test_rejects(self, path: str) -> None:
        with pytest.raises(UserInputError):
            validate_root_path(path)


# ---------------------------------------------------------------------------
# Opening documents
# ---------------------------------------------------------------------------


class TestOpenLocalDocument:
    @pytest.mark.asyncio
    async def test_success_sends_candidates(self, mock_client) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "path": "C:\\Docs\\Report Rev.1.pdf"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.open_local_document(REPORT)

        assert result.ok
        assert result.kind is None
        (request,) = seen
        assert request.method == "POST"
        assert request.url.path == "/open"
        assert request.headers["X-Request-ID"] == "Report-Rev.1-pdf"
        body = json.loads(request.content)
        assert body["candidates"] == ["Report Rev.1.pdf", "Report.pdf", "Report Rev.1", "Report"]
        assert body["logicalPath"] == "/A/B"
        assert body["fileType"] == "pdf"
        assert isinstance(body["timestamp"], int)

    @pytest.mark.asyncio
    async def test_remote_document_makes_no_call(self, mock_client) -> None:
        opener = OpenRequestClient(BASE, client=mock_client(_unexpected))
        doc = DocumentRef(title="Report", drive_url="https://drive.example/d/1")

        result = await opener.open_local_document(doc)

        assert not result.ok
        assert result.message == REMOTE_DOCUMENT_MESSAGE
        assert result.kind is FailureKind.REMOTE

    @pytest.mark.asyncio
    async def test_timeout(self, mock_client) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"success": True})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.open_local_document(REPORT, timeout_ms=50)

        assert not result.ok
        assert result.message == TIMEOUT_MESSAGE
        assert result.kind is FailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_refused(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.open_local_document(REPORT)

        assert not result.ok
        assert result.kind is FailureKind.NETWORK

    @pytest.mark.asyncio
    async def test_retries_once_on_503(self, mock_client) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(503, text="starting up")
            return httpx.Response(200, json={"success": True})

        opener = OpenRequestClient(BASE, client=mock_client(handler), retry_delay_ms=0)
        result = await opener.open_local_document(REPORT)

        assert result.ok
        assert calls == 2

    @pytest.mark.asyncio
    async def test_retry_is_bounded(self, mock_client) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500, json={"message": "boom"})

        opener = OpenRequestClient(BASE, client=mock_client(handler), retry_delay_ms=0)
        result = await opener.open_local_document(REPORT)

        assert calls == 2
        assert result.kind is FailureKind.PROTOCOL
        assert result.message == "boom"

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self, mock_client) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(502)

        opener = OpenRequestClient(BASE, client=mock_client(handler), retry_delay_ms=0)
        result = await opener.open_local_document(REPORT, retry=False)

        assert calls == 1
        assert result.kind is FailureKind.PROTOCOL
        assert result.message == "companion service unavailable (502)"

    @pytest.mark.asyncio
    async def test_404_uses_error_field(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "no candidate found"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.open_local_document(REPORT)

        assert result.kind is FailureKind.PROTOCOL
        assert result.message == "no candidate found"

    @pytest.mark.asyncio
    async def test_malformed_body(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>ok</html>")

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.open_local_document(REPORT)

        assert not result.ok
        assert result.kind is FailureKind.MALFORMED

    @pytest.mark.asyncio
    async def test_refused_by_companion(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "message": "file locked"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.open_local_document(REPORT)

        assert not result.ok
        assert result.message == "file locked"
        assert result.kind is FailureKind.REJECTED

    @pytest.mark.asyncio
    async def test_duplicate_in_flight_request_is_busy(self, mock_client) -> None:
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json={"success": True})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        first = asyncio.create_task(opener.open_local_document(REPORT))
        await asyncio.sleep(0.01)

        second = await opener.open_local_document(REPORT)
        release.set()

        assert second.kind is FailureKind.BUSY
        assert (await first).ok

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, mock_client) -> None:
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json={"success": True})

        opener = OpenRequestClient(BASE, client=mock_client(handler), max_concurrent=2)
        running = [
            asyncio.create_task(opener.open_local_document(DocumentRef(title=f"Doc {i}")))
            for i in range(2)
        ]
        await asyncio.sleep(0.01)

        third = await opener.open_local_document(DocumentRef(title="Doc 3"))
        release.set()

        assert third.kind is FailureKind.BUSY
        assert all(r.ok for r in await asyncio.gather(*running))


class TestCheckAvailability:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("status", "expected"), [(200, True), (204, True), (503, False)])
    async def test_status_codes(self, mock_client, status: int, expected: bool) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/health"
            return httpx.Response(status)

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        assert await opener.check_availability() is expected

    @pytest.mark.asyncio
    async def test_unreachable(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        assert await opener.check_availability() is False


# ---------------------------------------------------------------------------
# Watched roots
# ---------------------------------------------------------------------------


class TestRoots:
    @pytest.mark.asyncio
    async def test_list_roots(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/config"
            return httpx.Response(
                200,
                json={
                    "roots": ["C:\\Docs", "C:\\Docs", "\\\\nas\\share"],
                    "company": {"name": "Acme", "code": "AC"},
                },
            )

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.list_roots()

        assert result.ok
        assert result.roots is not None
        assert result.roots.roots == ["C:\\Docs", "\\\\nas\\share"]
        assert result.roots.company is not None
        assert result.roots.company.name == "Acme"

    @pytest.mark.asyncio
    async def test_invalid_root_rejected_before_network(self, mock_client) -> None:
        opener = OpenRequestClient(BASE, client=mock_client(_unexpected))
        with pytest.raises(UserInputError):
            await opener.add_root("relative\\folder")

    @pytest.mark.asyncio
    async def test_add_root_keeps_known_company(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200, json={"roots": ["C:\\Docs"], "company": {"name": "Acme"}}
                )
            assert json.loads(request.content) == {"addRoot": "D:\\More"}
            return httpx.Response(200, json={"roots": ["C:\\Docs", "D:\\More"]})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        await opener.list_roots()
        result = await opener.add_root("  D:\\More ")

        assert result.ok
        assert result.roots is not None
        assert result.roots.roots == ["C:\\Docs", "D:\\More"]
        assert result.roots.company is not None
        assert result.roots.company.name == "Acme"

    @pytest.mark.asyncio
    async def test_remove_root(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            assert json.loads(request.content) == {"root": "C:\\Docs"}
            return httpx.Response(200, json={"roots": []})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.remove_root("C:\\Docs")

        assert result.ok
        assert result.roots is not None
        assert result.roots.roots == []

    @pytest.mark.asyncio
    async def test_failure_returns_cached_roots(self, mock_client) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(200, json={"roots": ["C:\\Docs"]})
            return httpx.Response(500, json={"message": "disk full"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        await opener.list_roots()
        result = await opener.add_root("E:\\New")

        assert not result.ok
        assert result.kind is FailureKind.PROTOCOL
        assert result.message == "disk full"
        assert result.roots is not None
        assert result.roots.roots == ["C:\\Docs"]

    @pytest.mark.asyncio
    async def test_cached_roots_is_a_copy(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"roots": ["C:\\Docs"]})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        await opener.list_roots()
        opener.cached_roots.roots.append("Z:\\Injected")

        assert opener.cached_roots.roots == ["C:\\Docs"]


# ---------------------------------------------------------------------------
# Drive folders and client config
# ---------------------------------------------------------------------------


class TestDetectDrivePaths:
    @pytest.mark.asyncio
    async def test_paths_found(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/detect-drive-paths"
            return httpx.Response(200, json={"paths": ["G:\\My Drive", "G:\\My Drive"]})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.detect_drive_paths()

        assert result.ok
        assert result.paths == ("G:\\My Drive",)
        assert result.kind is None

    @pytest.mark.asyncio
    async def test_server_error(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": "detection crashed"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.detect_drive_paths()

        assert not result.ok
        assert result.paths == ()
        assert result.kind is FailureKind.PROTOCOL
        assert result.message == "detection crashed"

    @pytest.mark.asyncio
    async def test_timeout(self, mock_client) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"paths": []})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.detect_drive_paths(timeout_ms=20)

        assert not result.ok
        assert result.kind is FailureKind.TIMEOUT
        assert result.message == TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_malformed_body(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"paths": "G:\\"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.detect_drive_paths()

        assert result.kind is FailureKind.MALFORMED

    @pytest.mark.asyncio
    async def test_with_retry_sends_policy(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/detect-drive-paths-with-retry"
            assert request.url.params["retries"] == "3"
            assert request.url.params["delay"] == "500"
            return httpx.Response(
                200, json={"success": True, "paths": ["H:\\Shared drives"], "attempts": 2}
            )

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.detect_drive_paths_with_retry(retries=3, delay_ms=500)

        assert result.ok
        assert result.paths == ("H:\\Shared drives",)
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_with_retry_gives_up(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "success": False,
                    "paths": [],
                    "attempts": 5,
                    "message": "drive not mounted",
                },
            )

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.detect_drive_paths_with_retry()

        assert not result.ok
        assert result.kind is FailureKind.REJECTED
        assert result.message == "drive not mounted"
        assert result.attempts == 5


class TestClientConfig:
    @pytest.mark.asyncio
    async def test_save(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/config"
            body = json.loads(request.content)
            assert body["clientId"] == "acme"
            assert body["drivePaths"] == ["G:\\My Drive"]
            assert body["action"] == "saveClientConfig"
            assert isinstance(body["timestamp"], int)
            return httpx.Response(200, json={"success": True})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.save_client_config(" acme ", ["G:\\My Drive"])

        assert result.ok
        assert result.config is not None
        assert result.config.client_id == "acme"
        assert result.config.drive_paths == ["G:\\My Drive"]

    @pytest.mark.asyncio
    async def test_save_rejected(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid configuration"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.save_client_config("acme", [])

        assert not result.ok
        assert result.kind is FailureKind.PROTOCOL
        assert result.message == "invalid configuration"

    @pytest.mark.asyncio
    async def test_blank_client_id_rejected_before_network(self, mock_client) -> None:
        opener = OpenRequestClient(BASE, client=mock_client(_unexpected))
        with pytest.raises(UserInputError):
            await opener.save_client_config("  ", ["G:\\My Drive"])
        with pytest.raises(UserInputError):
            await opener.load_client_config("")

    @pytest.mark.asyncio
    async def test_load(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.raw_path == b"/config/acme%2Fnorth"
            return httpx.Response(
                200,
                json={
                    "clientId": "acme/north",
                    "drivePaths": ["G:\\My Drive"],
                    "roots": ["C:\\Docs"],
                },
            )

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.load_client_config("acme/north")

        assert result.ok
        assert result.config is not None
        assert result.config.client_id == "acme/north"
        assert result.config.drive_paths == ["G:\\My Drive"]
        assert result.config.roots == ["C:\\Docs"]

    @pytest.mark.asyncio
    async def test_load_missing(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "not found"})

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.load_client_config("acme")

        assert not result.ok
        assert result.config is None
        assert result.kind is FailureKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_load_unreachable(self, mock_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        opener = OpenRequestClient(BASE, client=mock_client(handler))
        result = await opener.load_client_config("acme")

        assert not result.ok
        assert result.kind is FailureKind.NETWORK
