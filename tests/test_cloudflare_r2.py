#!/usr/bin/env python3
"""
Tests for the Cloudflare R2 integration.
"""

import base64
import hashlib
import threading
from xml.etree import ElementTree

import httpx
import pytest

from integrations.cloudflare_r2 import R2Client, R2Settings
from integrations.cloudflare_r2.models import CompletedPart
from integrations.cloudflare_r2.multipart import MIN_PART_SIZE, complete_multipart_xml
from integrations.errors import ConfigurationError, NotFoundError, ServerError, ValidationError

ACCOUNT = "0123456789abcdef"
S3_NS = "http://s3.amazonaws.com/doc/2006-03-01/"

LIST_PAGE_1 = f"""<?xml version="1.0" encoding="UTF-8"?>
<ListBucketResult xmlns="{S3_NS}">
  <Name>media</Name>
  <Prefix>img/</Prefix>
  <KeyCount>1</KeyCount>
  <IsTruncated>true</IsTruncated>
  <NextContinuationToken>tok-2</NextContinuationToken>
  <Contents><Key>img/a.png</Key><Size>10</Size><ETag>"e1"</ETag></Contents>
  <CommonPrefixes><Prefix>img/thumbs/</Prefix></CommonPrefixes>
</ListBucketResult>"""

LIST_PAGE_2 = f"""<?xml version="1.0" encoding="UTF-8"?>
<ListBucketResult xmlns="{S3_NS}">
  <Name>media</Name>
  <IsTruncated>false</IsTruncated>
  <Contents><Key>img/b.png</Key><Size>20</Size></Contents>
</ListBucketResult>"""


def make_client(transport, **overrides):
    values = {
        "account_id": ACCOUNT,
        "access_key_id": "AKIDEXAMPLE",
        "secret_access_key": "secret",
        "default_bucket": "media",
        "max_retry_attempts": 0,
    }
    values.update(overrides)
    return R2Client.from_settings(R2Settings(**values), transport=transport)


def xml(body: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=body.encode(), headers={"Content-Type": "application/xml"})


class TestSettings:
    """Test R2 configuration."""

    def test_base_url_from_account(self, clean_env):
        settings = R2Settings(account_id=ACCOUNT)
        assert settings.base_url == f"https://{ACCOUNT}.r2.cloudflarestorage.com"

    def test_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("CLOUDFLARE_R2_ACCOUNT_ID", ACCOUNT)
        monkeypatch.setenv("CLOUDFLARE_R2_DEFAULT_BUCKET", "media")
        settings = R2Settings()
        assert settings.default_bucket == "media"
        assert ACCOUNT in settings.base_url

    def test_credentials_required(self, clean_env):
        with pytest.raises(ConfigurationError) as exc_info:
            R2Client.from_settings(R2Settings(account_id=ACCOUNT))
        assert "access_key_id" in str(exc_info.value)

    def test_part_size_minimum(self, clean_env):
        settings = R2Settings(
            account_id=ACCOUNT, access_key_id="a", secret_access_key="s", part_size=1024
        )
        with pytest.raises(ConfigurationError):
            settings.validate_configuration()


class TestObjects:
    """Test single object operations."""

    @pytest.mark.asyncio
    async def test_put_object_signed(self, clean_env, handler, transport):
        handler.add(
            "PUT",
            "/media/docs/report.pdf",
            httpx.Response(200, headers={"ETag": '"abc"', "x-amz-version-id": "v1"}),
        )
        client = make_client(transport)

        result = await client.put_object(
            "docs/report.pdf",
            b"%PDF",
            content_type="application/pdf",
            metadata={"owner": "alice"},
            cache_control="max-age=60",
        )

        assert result.etag == '"abc"'
        assert result.version_id == "v1"
        request = handler.last
        assert request.url.host == f"{ACCOUNT}.r2.cloudflarestorage.com"
        assert request.headers["x-amz-meta-owner"] == "alice"
        assert request.headers["x-amz-content-sha256"] == hashlib.sha256(b"%PDF").hexdigest()
        authorization = request.headers["Authorization"]
        assert authorization.startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
        assert "/auto/s3/aws4_request" in authorization
        assert "x-amz-meta-owner" in authorization
        await client.close()

    @pytest.mark.asyncio
    async def test_key_is_uri_encoded(self, clean_env, handler, transport):
        handler.add("PUT", "/media/a b/c+d.txt", httpx.Response(200))
        client = make_client(transport)

        await client.put_object("a b/c+d.txt", b"x")
        assert handler.last.url.raw_path == b"/media/a%20b/c%2Bd.txt"
        await client.close()

    @pytest.mark.asyncio
    async def test_get_object_range_and_metadata(self, clean_env, handler, transport):
        handler.add(
            "GET",
            "/media/data.bin",
            httpx.Response(
                206,
                content=b"2345",
                headers={
                    "Content-Type": "application/octet-stream",
                    "ETag": '"e"',
                    "x-amz-meta-source": "camera",
                },
            ),
        )
        client = make_client(transport)

        result = await client.get_object("data.bin", offset=2, length=4)
        assert result.content == b"2345"
        assert result.properties.content_length == 4
        assert result.properties.metadata == {"source": "camera"}
        assert handler.last.headers["Range"] == "bytes=2-5"
        assert "range" in handler.last.headers["Authorization"]

        await client.get_object("data.bin", offset=10)
        assert handler.last.headers["Range"] == "bytes=10-"
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_object(self, clean_env, handler, transport):
        handler.add(
            "GET",
            "/media/absent",
            xml("<Error><Code>NoSuchKey</Code><Message>The key does not exist</Message></Error>", 404),
        )
        client = make_client(transport)

        with pytest.raises(NotFoundError) as exc_info:
            await client.get_object("absent")
        assert "does not exist" in str(exc_info.value)
        await client.close()

    @pytest.mark.asyncio
    async def test_key_validation(self, clean_env, handler, transport):
        client = make_client(transport)
        with pytest.raises(ValidationError):
            await client.put_object("", b"x")
        with pytest.raises(ValidationError):
            await client.put_object("k" * 1025, b"x")
        no_bucket = make_client(transport, default_bucket=None)
        with pytest.raises(ValidationError):
            await no_bucket.put_object("key", b"x")
        await no_bucket.close()
        assert handler.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_objects(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/media",
            xml(
                "<DeleteResult>"
                "<Deleted><Key>a.txt</Key></Deleted>"
                "<Error><Key>b&amp;c.txt</Key><Code>AccessDenied</Code><Message>no</Message></Error>"
                "</DeleteResult>"
            ),
        )
        client = make_client(transport)

        result = await client.delete_objects(["a.txt", "b&c.txt"])
        assert result.deleted == ["a.txt"]
        assert result.errors[0].key == "b&c.txt"
        assert result.errors[0].code == "AccessDenied"

        request = handler.last
        assert "delete" in request.url.params
        body = request.content
        assert request.headers["Content-MD5"] == base64.b64encode(hashlib.md5(body).digest()).decode()
        root = ElementTree.fromstring(body)
        assert [k.text for k in root.iter("Key")] == ["a.txt", "b&c.txt"]
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_objects_limits(self, clean_env, handler, transport):
        client = make_client(transport)
        assert (await client.delete_objects([])).deleted == []
        with pytest.raises(ValidationError):
            await client.delete_objects([str(i) for i in range(1001)])
        assert handler.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_iter_objects_follows_tokens(self, clean_env, handler, transport):
        def list_objects(request):
            if request.url.params.get("continuation-token") == "tok-2":
                return xml(LIST_PAGE_2)
            return xml(LIST_PAGE_1)

        handler.add("GET", "/media", list_objects)
        client = make_client(transport)

        page = await client.list_objects(prefix="img/", delimiter="/")
        assert page.prefix == "img/"
        assert page.common_prefixes == ["img/thumbs/"]
        assert page.is_truncated is True
        assert handler.last.url.params["list-type"] == "2"
        assert "max-keys" not in handler.last.url.params

        keys = [item.key async for item in client.iter_objects(prefix="img/")]
        assert keys == ["img/a.png", "img/b.png"]
        await client.close()

    @pytest.mark.asyncio
    async def test_copy_object(self, clean_env, handler, transport):
        handler.add(
            "PUT",
            "/archive/copy.txt",
            xml("<CopyObjectResult><ETag>\"c\"</ETag><LastModified>2024-01-01</LastModified></CopyObjectResult>"),
        )
        client = make_client(transport)

        result = await client.copy_object(
            "orig.txt", "copy.txt", destination_bucket="archive", metadata={"k": "v"}
        )
        assert result.etag == '"c"'
        headers = handler.last.headers
        assert headers["x-amz-copy-source"] == "/media/orig.txt"
        assert headers["x-amz-metadata-directive"] == "REPLACE"
        assert headers["x-amz-meta-k"] == "v"
        await client.close()

    def test_presign(self, clean_env, transport):
        client = make_client(transport)
        presigned = client.presign_get("docs/report.pdf", expires_in=600)

        url = httpx.URL(presigned.url)
        assert url.path == "/media/docs/report.pdf"
        assert url.params["X-Amz-Expires"] == "600"
        assert url.params["X-Amz-SignedHeaders"] == "host"
        assert len(url.params["X-Amz-Signature"]) == 64
        assert presigned.method == "GET"

        assert client.presign_put("k").url != presigned.url
        with pytest.raises(ValidationError):
            client.presign_get("k", expires_in=604801)
        with pytest.raises(ValidationError):
            client.presign_get("k", expires_in=0)
        default = httpx.URL(client.presign_get("k").url)
        assert default.params["X-Amz-Expires"] == str(client.settings.presign_expires_in)


class TestMultipart:
    """Test multipart uploads."""

    def test_complete_xml_sorted(self):
        body = complete_multipart_xml(
            [CompletedPart(part_number=2, etag='"b"'), CompletedPart(part_number=1, etag='"a"')]
        )
        root = ElementTree.fromstring(body)
        assert [p.findtext("PartNumber") for p in root.findall("Part")] == ["1", "2"]
        assert root.find("Part").findtext("ETag") == '"a"'

    @pytest.mark.asyncio
    async def test_small_upload_uses_put(self, clean_env, handler, transport):
        handler.add("PUT", "/media/small.txt", httpx.Response(200, headers={"ETag": '"s"'}))
        client = make_client(transport)
        progress = []

        result = await client.upload("small.txt", b"tiny", on_progress=lambda d, t: progress.append((d, t)))
        assert result.parts == 1
        assert result.etag == '"s"'
        assert progress == [(4, 4)]
        assert len(handler.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_multipart_upload(self, clean_env, handler, transport):
        lock = threading.Lock()
        part_sizes = {}

        def object_route(request):
            params = request.url.params
            if request.method == "POST" and "uploads" in params:
                return xml("<InitiateMultipartUploadResult><UploadId>up-1</UploadId></InitiateMultipartUploadResult>")
            if request.method == "PUT":
                number = int(params["partNumber"])
                with lock:
                    part_sizes[number] = len(request.content)
                return httpx.Response(200, headers={"ETag": f'"p{number}"'})
            if request.method == "POST":
                return xml("<CompleteMultipartUploadResult><ETag>\"final-3\"</ETag></CompleteMultipartUploadResult>")
            return httpx.Response(204)

        for method in ("POST", "PUT", "DELETE"):
            handler.add(method, "/media/big.bin", object_route)
        client = make_client(
            transport, multipart_threshold=MIN_PART_SIZE, part_size=MIN_PART_SIZE
        )
        data = b"x" * (2 * MIN_PART_SIZE + 100)
        progress = []

        result = await client.upload(
            "big.bin", data, concurrency=2, on_progress=lambda d, t: progress.append((d, t))
        )

        assert result.upload_id == "up-1"
        assert result.parts == 3
        assert result.etag == '"final-3"'
        assert part_sizes == {1: MIN_PART_SIZE, 2: MIN_PART_SIZE, 3: 100}
        assert progress[-1] == (len(data), len(data))

        complete = handler.last
        assert complete.url.params["uploadId"] == "up-1"
        numbers = [p.findtext("PartNumber") for p in ElementTree.fromstring(complete.content)]
        assert numbers == ["1", "2", "3"]
        assert not any(r.method == "DELETE" for r in handler.requests)
        await client.close()

    @pytest.mark.asyncio
    async def test_failed_part_aborts_upload(self, clean_env, handler, transport):
        def object_route(request):
            params = request.url.params
            if request.method == "POST" and "uploads" in params:
                return xml("<InitiateMultipartUploadResult><UploadId>up-2</UploadId></InitiateMultipartUploadResult>")
            if request.method == "PUT":
                if params["partNumber"] == "2":
                    return xml("<Error><Code>InternalError</Code><Message>boom</Message></Error>", 500)
                return httpx.Response(200, headers={"ETag": '"ok"'})
            return httpx.Response(204)

        for method in ("POST", "PUT", "DELETE"):
            handler.add(method, "/media/big.bin", object_route)
        client = make_client(
            transport, multipart_threshold=MIN_PART_SIZE, part_size=MIN_PART_SIZE
        )

        with pytest.raises(ServerError):
            await client.upload("big.bin", b"y" * (MIN_PART_SIZE + 1), concurrency=1)

        aborts = [r for r in handler.requests if r.method == "DELETE"]
        assert len(aborts) == 1
        assert aborts[0].url.params["uploadId"] == "up-2"
        await client.close()

    @pytest.mark.asyncio
    async def test_complete_error_body(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/media/big.bin",
            xml("<Error><Code>InvalidPart</Code><Message>part missing</Message></Error>"),
        )
        client = make_client(transport)

        with pytest.raises(ServerError) as exc_info:
            await client.complete_multipart_upload(
                "big.bin", "up-3", [CompletedPart(part_number=1, etag='"a"')]
            )
        assert "part missing" in str(exc_info.value)
        await client.close()

    @pytest.mark.asyncio
    async def test_part_number_bounds(self, clean_env, transport):
        client = make_client(transport)
        with pytest.raises(ValidationError):
            await client.upload_part("k", "up", 0, b"x")
        with pytest.raises(ValidationError):
            await client.upload_part("k", "up", 10001, b"x")
        with pytest.raises(ValidationError):
            await client.complete_multipart_upload("k", "up", [])
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check(self, clean_env, handler, transport):
        handler.add("GET", "/", xml("<ListAllMyBucketsResult><Buckets/></ListAllMyBucketsResult>"))
        client = make_client(transport)
        assert (await client.health_check())["status"] == "healthy"
        await client.close()
