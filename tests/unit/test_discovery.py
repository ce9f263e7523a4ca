"""
Unit tests for boundary discovery
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from boundaries.extractors.discovery import (
    COUNTRY_IDS_QUERY,
    MARITIME_IDS_QUERY,
    BoundaryDiscovery,
    boundary_query,
    dedupe,
    parse_id_list,
)
from boundaries.extractors.overpass_client import DownloadResult
from core.exceptions import DownloadError
from models.base import BoundaryKind

ENDPOINT = "https://primary.example/api/interpreter"


def fake_client(csv_text):
    client = MagicMock()
    client.download = AsyncMock(return_value=DownloadResult(csv_text, None, ENDPOINT, 1))
    return client


class TestParsing:

    def test_header_is_dropped(self):
        assert parse_id_list("@id\n16239\n51477\n") == [16239, 51477]

    def test_blank_and_junk_lines_ignored(self):
        assert parse_id_list("@id\n\n 42 \nremark: runtime\n7\n") == [42, 7]

    def test_header_only(self):
        assert parse_id_list("@id\n") == []

    def test_dedupe_keeps_first_seen_order(self):
        assert dedupe([3, 1, 3, 2, 1]) == [3, 1, 2]

    def test_boundary_query(self):
        query = boundary_query(16239)
        assert "rel(16239);" in query
        assert "[out:json]" in query


class TestBoundaryDiscovery:

    @pytest.mark.asyncio
    async def test_country_ids_with_extras(self):
        client = fake_client("@id\n1\n2\n")
        discovery = BoundaryDiscovery(client, extra_country_ids=[2, 3])

        ids = await discovery.fetch_ids(BoundaryKind.COUNTRY)

        assert ids == [1, 2, 3]
        client.download.assert_awaited_once_with(COUNTRY_IDS_QUERY)

    @pytest.mark.asyncio
    async def test_maritime_ids_skip_extras(self):
        client = fake_client("@id\n9\n9\n8\n")
        discovery = BoundaryDiscovery(client, extra_country_ids=[3])

        ids = await discovery.fetch_ids(BoundaryKind.MARITIME)

        assert ids == [9, 8]
        client.download.assert_awaited_once_with(MARITIME_IDS_QUERY)

    @pytest.mark.asyncio
    async def test_empty_list_is_an_error(self):
        discovery = BoundaryDiscovery(fake_client("@id\n"))

        with pytest.raises(DownloadError):
            await discovery.fetch_maritime_ids()
