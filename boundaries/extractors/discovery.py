"""
Discover which boundary relations exist.

The Overpass CSV output is used so the result is a plain id list; the
header line is dropped before parsing.
"""

from typing import Iterable, List

from boundaries.extractors.overpass_client import OverpassClient
from core.exceptions import DownloadError
from models.base import BoundaryKind
import logging

logger = logging.getLogger(__name__)

COUNTRY_IDS_QUERY = """[out:csv(::id)][timeout:600];
(
  relation["type"="boundary"]["boundary"="administrative"]["admin_level"="2"];
);
out ids;
"""

MARITIME_IDS_QUERY = """[out:csv(::id)][timeout:600];
(
  relation["type"="boundary"]["border_type"~"^(eez|territorial|contiguous)$"];
  relation["type"="boundary"]["boundary"="maritime"];
);
out ids;
"""

BOUNDARY_QUERY_TEMPLATE = """[out:json][timeout:600];
rel({boundary_id});
(._;>;);
out;
"""


def boundary_query(boundary_id: int) -> str:
    """Query for one relation with every member way and node"""
    return BOUNDARY_QUERY_TEMPLATE.format(boundary_id=int(boundary_id))


def parse_id_list(csv_text: str) -> List[int]:
    """
    Parse `[out:csv(::id)]` output.

    The first line is the `@id` header; blank and non-numeric lines are
    ignored.
    """
    ids = []
    lines = csv_text.splitlines()
    for line in lines[1:]:
        value = line.strip()
        if not value:
            continue
        if not value.isdigit():
            logger.debug(f"Ignoring non-numeric id line: {value!r}")
            continue
        ids.append(int(value))
    return ids


def dedupe(ids: Iterable[int]) -> List[int]:
    """Drop repeated ids, keeping first-seen order"""
    seen = set()
    unique = []
    for boundary_id in ids:
        if boundary_id in seen:
            continue
        seen.add(boundary_id)
        unique.append(boundary_id)
    return unique


class BoundaryDiscovery:
    """Fetch the authoritative id list for one boundary kind"""

    def __init__(self, client: OverpassClient, extra_country_ids: Iterable[int] = ()):
        self.client = client
        self.extra_country_ids = list(extra_country_ids)

    async def fetch_ids(self, kind: BoundaryKind) -> List[int]:
        if kind == BoundaryKind.COUNTRY:
            return await self.fetch_country_ids()
        return await self.fetch_maritime_ids()

    async def fetch_country_ids(self) -> List[int]:
        ids = await self._fetch(COUNTRY_IDS_QUERY, BoundaryKind.COUNTRY)

        # Territories without admin_level=2 that notes still need to land in
        if self.extra_country_ids:
            logger.info(f"Adding {len(self.extra_country_ids)} configured extra country ids")
            ids = dedupe(ids + self.extra_country_ids)
        return ids

    async def fetch_maritime_ids(self) -> List[int]:
        return await self._fetch(MARITIME_IDS_QUERY, BoundaryKind.MARITIME)

    async def _fetch(self, query: str, kind: BoundaryKind) -> List[int]:
        logger.info(f"Discovering {kind.value} boundaries")
        result = await self.client.download(query)
        ids = dedupe(parse_id_list(result.text))

        if not ids:
            raise DownloadError(
                f"Discovery returned no {kind.value} boundary ids",
                context={"kind": kind.value, "endpoint": result.endpoint}
            )

        logger.info(f"Discovered {len(ids)} {kind.value} boundaries from {result.endpoint}")
        return ids
