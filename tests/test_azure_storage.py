#!/usr/bin/env python3
"""
Tests for the Azure Blob and Files integrations and their shared storage
authentication.
"""

import base64
from urllib.parse import parse_qs

import httpx
import pytest

from integrations.auth import AccessToken
from integrations.azure.blob_storage import (
    BlobStorageClient,
    BlobStorageSettings,
    block_id,
    block_list_xml,
)
from integrations.azure.files import AzureFilesClient, AzureFilesSettings
from integrations.azure.storage import (
    SasAuth,
    SharedKeyAuth,
    encode_path,
    parse_connection_string,
    range_header,
    storage_auth,
)
from integrations.errors import ConfigurationError, NotFoundError, ValidationError

ACCOUNT_KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode()

LIST_BLOBS_PAGE_1 = """<?xml version="1.0" encoding="utf-8"?>
<EnumerationResults ContainerName="docs">
  <Blobs>
    <Blob>
      <Name>a.txt</Name>
      <Properties>
        <Content-Length>12</Content-Length>
        <Content-Type>text/plain</Content-Type>
        <Etag>0x1</Etag>
        <AccessTier>Hot</AccessTier>
      </Properties>
      <Metadata><owner>me</owner></Metadata>
    </Blob>
    <BlobPrefix><Name>reports/</Name></BlobPrefix>
  </Blobs>
  <NextMarker>m2</NextMarker>
</EnumerationResults>"""

LIST_BLOBS_PAGE_2 = """<?xml version="1.0" encoding="utf-8"?>
<EnumerationResults ContainerName="docs">
  <Blobs><Blob><Name>b.txt</Name><Properties /></Blob></Blobs>
  <NextMarker />
</EnumerationResults>"""

LIST_DIRECTORY = """<?xml version="1.0" encoding="utf-8"?>
<EnumerationResults ShareName="share" DirectoryPath="logs">
  <Entries>
    <File><Name>app.log</Name><Properties><Content-Length>100</Content-Length></Properties></File>
    <Directory><Name>archive</Name><Properties /></Directory>
  </Entries>
  <NextMarker />
</EnumerationResults>"""


def blob_client(transport, **overrides):
    values = {
        "account_name": "acct",
        "account_key": ACCOUNT_KEY,
        "default_container": "docs",
        "max_retry_attempts": 0,
    }
    values.update(overrides)
    return BlobStorageClient.from_settings(BlobStorageSettings(**values), transport=transport)


def files_client(transport, **overrides):
    values = {
        "account_name": "acct",
        "account_key": ACCOUNT_KEY,
        "default_share": "share",
        "max_retry_attempts": 0,
    }
    values.update(overrides)
    return AzureFilesClient.from_settings(AzureFilesSettings(**values), transport=transport)


class TestStorageHelpers:
    """Test settings and shared helpers."""

    def test_connection_string(self, clean_env):
        settings = BlobStorageSettings(
            connection_string=(
                "DefaultEndpointsProtocol=https;AccountName=acct;"
                f"AccountKey={ACCOUNT_KEY};EndpointSuffix=core.chinacloudapi.cn"
            )
        )
        assert settings.account_name == "acct"
        assert settings.account_key == ACCOUNT_KEY
        assert settings.base_url == "https://acct.blob.core.chinacloudapi.cn"

    def test_files_base_url(self, clean_env):
        settings = AzureFilesSettings(account_name="acct", sas_token="sv=1")
        assert settings.base_url == "https://acct.file.core.windows.net"

    def test_parse_connection_string_keeps_padding(self):
        parts = parse_connection_string("AccountKey=abc==;AccountName=x;")
        assert parts == {"AccountKey": "abc==", "AccountName": "x"}

    def test_credentials_required(self, clean_env):
        with pytest.raises(ConfigurationError):
            storage_auth(BlobStorageSettings(account_name="acct"))

    def test_encode_path(self):
        assert encode_path("/dir/my file#1.txt") == "dir/my%20file%231.txt"

    def test_range_header(self):
        assert range_header(None, None) is None
        assert range_header(10, None) == "bytes=10-"
        assert range_header(0, 512) == "bytes=0-511"
        with pytest.raises(ValueError):
            range_header(0, 0)

    def test_block_ids_equal_length(self):
        assert len(block_id(1)) == len(block_id(12345))
        xml = block_list_xml([block_id(0)]).decode()
        assert f"<Latest>{block_id(0)}</Latest>" in xml


class TestSharedKeyAuth:
    """Test Shared Key signing."""

    def test_string_to_sign(self):
        auth = SharedKeyAuth("acct", ACCOUNT_KEY)
        request = httpx.Request(
            "GET",
            "https://acct.blob.core.windows.net/docs?restype=container&comp=list",
            headers={"x-ms-date": "Mon, 01 Jan 2024 00:00:00 GMT", "x-ms-version": "2023-11-03"},
        )

        expected = (
            "GET\n" + "\n" * 11
            + "x-ms-date:Mon, 01 Jan 2024 00:00:00 GMT\n"
            + "x-ms-version:2023-11-03\n"
            + "/acct/docs\ncomp:list\nrestype:container"
        )
        assert auth.string_to_sign(request) == expected

    def test_zero_content_length_is_blank(self):
        auth = SharedKeyAuth("acct", ACCOUNT_KEY)
        request = httpx.Request("PUT", "https://h/c", content=b"")
        request.headers["Content-Length"] = "0"
        lines = auth.string_to_sign(request).split("\n")
        assert lines[3] == ""

    @pytest.mark.asyncio
    async def test_authorization_header(self, clean_env, handler, transport):
        handler.add("HEAD", "/docs/a.txt", httpx.Response(200))
        client = blob_client(transport)
        await client.get_blob_properties("a.txt")

        request = handler.last
        auth = SharedKeyAuth("acct", ACCOUNT_KEY)
        assert request.headers["Authorization"] == f"SharedKey acct:{auth.sign(request)}"
        assert request.headers["x-ms-version"] == "2023-11-03"
        assert "x-ms-date" in request.headers
        await client.close()

    @pytest.mark.asyncio
    async def test_sas_auth(self, handler, transport):
        handler.add("GET", "/docs/a.txt", httpx.Response(200, content=b"x"))
        async with httpx.AsyncClient(
            transport=transport, auth=SasAuth("?sv=2023-11-03&sig=abc%2F")
        ) as client:
            await client.get("https://acct.blob.core.windows.net/docs/a.txt")

        params = handler.last.url.params
        assert params["sv"] == "2023-11-03"
        assert params["sig"] == "abc/"


class TestBlobStorage:
    """Test blob operations."""

    @pytest.mark.asyncio
    async def test_single_put_upload(self, clean_env, handler, transport):
        handler.add("PUT", "/docs/notes/a.txt", httpx.Response(201, headers={"ETag": '"0x1"'}))
        client = blob_client(transport)

        result = await client.upload_blob(
            "notes/a.txt", b"hello", content_type="text/plain", metadata={"owner": "me"}
        )

        assert result.etag == '"0x1"'
        assert result.block_count == 0
        request = handler.last
        assert request.headers["x-ms-blob-type"] == "BlockBlob"
        assert request.headers["x-ms-blob-content-type"] == "text/plain"
        assert request.headers["x-ms-meta-owner"] == "me"
        assert request.content == b"hello"
        await client.close()

    @pytest.mark.asyncio
    async def test_staged_block_upload(self, clean_env, handler, transport):
        """Test large blobs are staged as blocks and committed in order."""
        handler.add("PUT", "/docs/big.bin", httpx.Response(201, headers={"ETag": "e"}))
        client = blob_client(transport, single_upload_threshold=8, block_size=4)
        progress = []

        result = await client.upload_blob(
            "big.bin",
            b"0123456789",
            overwrite=False,
            on_progress=lambda done, total: progress.append(done),
        )

        assert result.block_count == 3
        blocks = [r for r in handler.requests if r.url.params.get("comp") == "block"]
        assert sorted(r.content for r in blocks) == [b"0123", b"4567", b"89"]
        commit = handler.last
        assert commit.url.params["comp"] == "blocklist"
        assert commit.headers["If-None-Match"] == "*"
        body = commit.content.decode()
        assert body.index(block_id(0)) < body.index(block_id(1)) < body.index(block_id(2))
        assert progress[-1] == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_ranged_download(self, clean_env, handler, transport):
        handler.add(
            "GET",
            "/docs/a.txt",
            httpx.Response(
                206,
                content=b"ell",
                headers={"x-ms-meta-owner": "me", "x-ms-blob-type": "BlockBlob"},
            ),
        )
        client = blob_client(transport)

        download = await client.download_blob("a.txt", offset=1, length=3)
        assert download.content == b"ell"
        assert download.properties.metadata == {"owner": "me"}
        assert download.properties.blob_type == "BlockBlob"
        assert handler.last.headers["x-ms-range"] == "bytes=1-3"
        await client.close()

    @pytest.mark.asyncio
    async def test_list_and_iterate(self, clean_env, handler, transport):
        def page(request):
            if request.url.params.get("marker") == "m2":
                return httpx.Response(200, text=LIST_BLOBS_PAGE_2)
            return httpx.Response(200, text=LIST_BLOBS_PAGE_1)

        handler.add("GET", "/docs", page)
        client = blob_client(transport)

        first = await client.list_blobs(delimiter="/", include_metadata=True)
        assert first.blobs[0].name == "a.txt"
        assert first.blobs[0].content_length == 12
        assert first.blobs[0].metadata == {"owner": "me"}
        assert first.prefixes == ["reports/"]
        assert first.next_marker == "m2"
        assert handler.last.url.params["include"] == "metadata"

        names = [blob.name async for blob in client.iter_blobs()]
        assert names == ["a.txt", "b.txt"]
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_blob(self, clean_env, handler, transport):
        handler.add(
            "DELETE",
            "/docs/gone.txt",
            httpx.Response(
                404,
                text="<?xml version='1.0'?><Error><Code>BlobNotFound</Code>"
                "<Message>The specified blob does not exist.</Message></Error>",
            ),
        )
        client = blob_client(transport)
        with pytest.raises(NotFoundError) as exc_info:
            await client.delete_blob("gone.txt")
        assert "does not exist" in str(exc_info.value)
        assert handler.last.headers["x-ms-delete-snapshots"] == "include"
        await client.close()

    @pytest.mark.asyncio
    async def test_container_required(self, clean_env, transport):
        client = blob_client(transport, default_container=None)
        with pytest.raises(ValidationError):
            await client.download_blob("a.txt")
        await client.close()

    @pytest.mark.asyncio
    async def test_container_lifecycle(self, clean_env, handler, transport):
        handler.add("PUT", "/logs", httpx.Response(201))
        handler.add("DELETE", "/logs", httpx.Response(202))
        client = blob_client(transport)

        await client.create_container("logs", public_access="blob")
        assert handler.last.url.params["restype"] == "container"
        assert handler.last.headers["x-ms-blob-public-access"] == "blob"
        await client.delete_container("logs")
        await client.close()


class TestAzureFiles:
    """Test file share operations."""

    @pytest.mark.asyncio
    async def test_upload_creates_then_writes_ranges(self, clean_env, handler, transport):
        handler.add("PUT", "/share/dir/report.csv", httpx.Response(201, headers={"ETag": "e"}))
        client = files_client(transport, range_size=4)

        properties = await client.upload_file("dir/report.csv", b"abcdefghij", content_type="text/csv")

        create = handler.requests[0]
        assert create.headers["x-ms-type"] == "file"
        assert create.headers["x-ms-content-length"] == "10"
        assert create.headers["x-ms-content-type"] == "text/csv"
        ranges = sorted(
            r.headers["x-ms-range"] for r in handler.requests[1:]
        )
        assert ranges == ["bytes=0-3", "bytes=4-7", "bytes=8-9"]
        assert all(r.headers["x-ms-write"] == "update" for r in handler.requests[1:])
        assert properties.content_length == 10
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_file_has_no_ranges(self, clean_env, handler, transport):
        handler.add("PUT", "/share/empty.txt", httpx.Response(201))
        client = files_client(transport)

        await client.upload_file("empty.txt", b"")
        assert len(handler.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_put_range_limits(self, clean_env, transport):
        client = files_client(transport)
        with pytest.raises(ValidationError):
            await client.put_range("a.txt", 0, b"")
        with pytest.raises(ValidationError):
            await client.put_range("a.txt", 0, b"x" * (4 * 1024 * 1024 + 1))
        await client.close()

    def test_range_size_validated(self, clean_env):
        settings = AzureFilesSettings(account_name="a", sas_token="sv=1", range_size=5 * 1024 * 1024)
        with pytest.raises(ConfigurationError):
            settings.validate_configuration()

    @pytest.mark.asyncio
    async def test_list_directory(self, clean_env, handler, transport):
        handler.add("GET", "/share/logs", httpx.Response(200, text=LIST_DIRECTORY))
        client = files_client(transport)

        entries = [entry async for entry in client.iter_directory("logs")]
        assert [(e.name, e.is_directory) for e in entries] == [
            ("app.log", False),
            ("archive", True),
        ]
        assert entries[0].content_length == 100
        params = parse_qs(handler.last.url.query.decode())
        assert params["restype"] == ["directory"]
        await client.close()

    @pytest.mark.asyncio
    async def test_create_directory_and_download(self, clean_env, handler, transport):
        handler.add("PUT", "/share/logs", httpx.Response(201))
        handler.add("GET", "/share/logs/app.log", httpx.Response(200, content=b"line"))
        client = files_client(transport)

        await client.create_directory("logs")
        assert handler.last.headers["x-ms-file-attributes"] == "Directory"
        download = await client.download_file("logs/app.log")
        assert download.content == b"line"
        await client.close()

    @pytest.mark.asyncio
    async def test_oauth_intent_header(self, clean_env, handler, transport):
        class StaticProvider:
            async def get_token(self, scopes, force_refresh=False):
                return AccessToken(token="aad", expires_on=9999999999)

        handler.add("DELETE", "/share/a.txt", httpx.Response(202))
        client = AzureFilesClient.from_settings(
            AzureFilesSettings(account_name="acct", default_share="share"),
            transport=transport,
            token_provider=StaticProvider(),
        )
        await client.delete_file("a.txt")

        assert handler.last.headers["Authorization"] == "Bearer aad"
        assert handler.last.headers["x-ms-file-request-intent"] == "backup"
        await client.close()
