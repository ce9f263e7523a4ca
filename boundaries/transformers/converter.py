"""
Convert raw Overpass JSON (nodes, ways, relations) into a GeoJSON
feature collection.

Relations become (Multi)Polygons assembled from their outer and inner way
members, tagged ways become LineStrings and tagged or role-carrying nodes
become Points. Geometry is not repaired here; invalid rings are passed on
to the database repair chain as-is.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shapely.errors import GEOSException
from shapely.geometry import LineString, MultiPolygon, Point, Polygon, mapping
from shapely.ops import polygonize

from boundaries.transformers.validator import count_polygonal, validate
from core.exceptions import ConversionFailure
import logging

logger = logging.getLogger(__name__)

OUTER_ROLES = ("outer", "")
INNER_ROLES = ("inner",)


def _way_line(way: Dict[str, Any], nodes: Dict[int, Dict[str, Any]]) -> Optional[LineString]:
    refs = way.get("nodes") or []
    if any(ref not in nodes for ref in refs):
        # Incomplete way: the response did not carry every node
        return None
    coords = [(nodes[ref]["lon"], nodes[ref]["lat"]) for ref in refs]
    if len(coords) < 2:
        return None
    return LineString(coords)


def _assemble(lines: List[LineString]) -> List[Polygon]:
    """Close way fragments into rings and return the enclosed faces"""
    if not lines:
        return []
    return [face for face in polygonize(lines) if not face.is_empty]


def build_relation_geometry(
    relation: Dict[str, Any],
    nodes: Dict[int, Dict[str, Any]],
    ways: Dict[int, Dict[str, Any]]
):
    """
    Build a Polygon or MultiPolygon from a relation's way members.

    Returns None when no closed outer ring can be formed.
    """
    outer_lines = []
    inner_lines = []

    for member in relation.get("members") or []:
        if member.get("type") != "way":
            continue
        way = ways.get(member.get("ref"))
        if way is None:
            continue
        line = _way_line(way, nodes)
        if line is None:
            continue
        role = member.get("role") or ""
        if role in OUTER_ROLES:
            outer_lines.append(line)
        elif role in INNER_ROLES:
            inner_lines.append(line)

    # Rings nested in other rings come back from polygonize as holes of the
    # enclosing face and again as faces of their own; keep the shells only
    outers = [Polygon(face.exterior.coords) for face in _assemble(outer_lines)]
    if not outers:
        return None
    inners = [Polygon(face.exterior.coords) for face in _assemble(inner_lines)]

    holes: Dict[int, List[Any]] = {i: [] for i in range(len(outers))}
    for inner in inners:
        owner = _smallest_container(outers, inner)
        if owner is None:
            logger.debug("Inner ring outside every outer ring, ignoring it")
            continue
        holes[owner].append(list(inner.exterior.coords))

    polygons = [Polygon(outer.exterior.coords, holes[i]) for i, outer in enumerate(outers)]

    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def _smallest_container(outers: List[Polygon], inner: Polygon) -> Optional[int]:
    """Index of the smallest outer ring holding `inner`, so a lake goes to its shore and not to an island in it"""
    candidates = [i for i, outer in enumerate(outers) if outer.contains(inner)]
    if not candidates:
        point = inner.representative_point()
        candidates = [i for i, outer in enumerate(outers) if outer.contains(point)]
    if not candidates:
        return None
    return min(candidates, key=lambda i: outers[i].area)


def _feature(osm_type: str, osm_id: int, geometry, tags: Dict[str, Any]) -> Dict[str, Any]:
    properties = dict(tags or {})
    properties["@id"] = f"{osm_type}/{osm_id}"
    return {
        "type": "Feature",
        "id": f"{osm_type}/{osm_id}",
        "properties": properties,
        "geometry": mapping(geometry),
    }


def convert(document: Dict[str, Any]) -> Dict[str, Any]:
    """
    Turn an Overpass `elements` document into a GeoJSON FeatureCollection.

    Node features that are members of a relation carry `@role` (for example
    `admin_centre` or `label`) and `@relation`.
    """
    nodes: Dict[int, Dict[str, Any]] = {}
    ways: Dict[int, Dict[str, Any]] = {}
    relations: List[Dict[str, Any]] = []

    for element in document.get("elements") or []:
        element_type = element.get("type")
        if element_type == "node":
            nodes[element["id"]] = element
        elif element_type == "way":
            ways[element["id"]] = element
        elif element_type == "relation":
            relations.append(element)

    features = []
    node_roles: Dict[int, tuple] = {}

    for relation in relations:
        for member in relation.get("members") or []:
            if member.get("type") == "node" and member.get("role"):
                node_roles.setdefault(member["ref"], (member["role"], relation["id"]))

        geometry = build_relation_geometry(relation, nodes, ways)
        if geometry is None:
            logger.warning(f"Relation {relation['id']} has no closed outer ring")
            continue
        features.append(_feature("relation", relation["id"], geometry, relation.get("tags")))

    for way_id, way in ways.items():
        if not way.get("tags"):
            continue
        line = _way_line(way, nodes)
        if line is not None:
            features.append(_feature("way", way_id, line, way["tags"]))

    for node_id, node in nodes.items():
        tags = node.get("tags") or {}
        role = node_roles.get(node_id)
        if not tags and role is None:
            continue
        properties = dict(tags)
        if role is not None:
            properties["@role"], properties["@relation"] = role
        features.append(_feature("node", node_id, Point(node["lon"], node["lat"]), properties))

    return {"type": "FeatureCollection", "features": features}


class ConversionStage:
    """
    Run the converter with its own retry ceiling and validate the output.

    A result without any Polygon/MultiPolygon feature is a failure even
    when it is structurally valid.
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        converter: Callable[[Dict[str, Any]], Dict[str, Any]] = convert
    ):
        # At least one attempt, otherwise there is no error to report
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._convert = converter

    async def run(self, boundary_id: int, document: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[ConversionFailure] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                collection = await asyncio.to_thread(self._convert, document)
                return self._check(boundary_id, collection, attempt)

            except ConversionFailure as e:
                last_error = e

            except (GEOSException, ValueError, TypeError, KeyError) as e:
                last_error = ConversionFailure(
                    "Converter crashed",
                    context={"attempt": attempt},
                    original_exception=e,
                    boundary_id=boundary_id
                )

            if attempt < self.max_retries:
                delay = min(self.retry_delay * attempt, self.max_delay)
                logger.warning(
                    f"Conversion of {boundary_id} failed (attempt {attempt}/{self.max_retries}): "
                    f"{last_error.message}. Retrying in {delay:.0f}s"
                )
                await self._sleep(delay)

        logger.error(f"Conversion of {boundary_id} failed after {self.max_retries} attempts")
        last_error.context["attempts"] = self.max_retries
        raise last_error

    def _check(self, boundary_id: int, collection: Dict[str, Any], attempt: int) -> Dict[str, Any]:
        result = validate(collection, "features")
        if not result.ok:
            raise ConversionFailure(
                f"Invalid feature collection: {result.reason}",
                context={"attempt": attempt},
                boundary_id=boundary_id
            )

        polygons = count_polygonal(collection)
        if polygons == 0:
            raise ConversionFailure(
                "Feature collection has no polygonal features",
                context={"attempt": attempt, "features": len(collection["features"]), "polygon_features": 0},
                boundary_id=boundary_id
            )

        logger.info(
            f"Converted {boundary_id}: {len(collection['features'])} features, {polygons} polygonal"
        )
        return collection
