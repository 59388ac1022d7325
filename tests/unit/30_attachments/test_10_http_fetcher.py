"""Tests for the HTTP object storage fetcher."""

import pytest
from aioresponses import aioresponses
from yarl import URL

from portmail.attachments import AttachmentResolver, HttpFetcher
from portmail.errors import AttachmentError, ConfigurationError

ENDPOINT = "https://storage.example.com/storage/v1"


def make_fetcher(token="service-key"):
    return HttpFetcher(endpoint=ENDPOINT + "/", bucket="ship-attachments", token=token)


def test_object_url_quotes_path():
    fetcher = make_fetcher()

    assert fetcher.object_url("u1/crew list.pdf") == (
        f"{ENDPOINT}/object/ship-attachments/u1/crew%20list.pdf"
    )


def test_endpoint_is_required():
    with pytest.raises(ConfigurationError):
        HttpFetcher(endpoint=None, bucket="ship-attachments")


@pytest.mark.asyncio
async def test_fetch_sends_bearer_token():
    url = f"{ENDPOINT}/object/ship-attachments/u1/crew.pdf"
    with aioresponses() as m:
        m.get(url, status=200, body=b"%PDF-crew")
        content = await make_fetcher().fetch("u1/crew.pdf")

        request = m.requests[("GET", URL(url))][0]
        assert request.kwargs["headers"]["Authorization"] == "Bearer service-key"
    assert content == b"%PDF-crew"


@pytest.mark.asyncio
async def test_fetch_without_token_sends_no_auth():
    url = f"{ENDPOINT}/object/ship-attachments/public.pdf"
    with aioresponses() as m:
        m.get(url, status=200, body=b"x")
        await make_fetcher(token=None).fetch("public.pdf")

        request = m.requests[("GET", URL(url))][0]
        assert "Authorization" not in request.kwargs["headers"]


@pytest.mark.asyncio
async def test_404_is_not_found():
    url = f"{ENDPOINT}/object/ship-attachments/gone.pdf"
    with aioresponses() as m:
        m.get(url, status=404)
        with pytest.raises(AttachmentError) as excinfo:
            await make_fetcher().fetch("gone.pdf")

    assert excinfo.value.not_found is True


@pytest.mark.asyncio
async def test_server_error_is_transient():
    url = f"{ENDPOINT}/object/ship-attachments/busy.pdf"
    with aioresponses() as m:
        m.get(url, status=503)
        resolution = await AttachmentResolver(make_fetcher()).resolve("busy.pdf")

    assert not resolution.ok
    assert resolution.not_found is False
    assert resolution.error


@pytest.mark.asyncio
async def test_remove_issues_delete():
    url = f"{ENDPOINT}/object/ship-attachments/u1/old.pdf"
    with aioresponses() as m:
        m.delete(url, status=200)
        assert await make_fetcher().remove("u1/old.pdf") is True

    with aioresponses() as m:
        m.delete(url, status=404)
        assert await make_fetcher().remove("u1/old.pdf") is False
