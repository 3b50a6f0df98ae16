import base64
import copy
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .fabric_models import DataflowDefinition, DecodedDataflowDefinition, DefinitionPart

logger = logging.getLogger(__name__)

MASHUP_PART = "mashup.pq"
QUERY_METADATA_PART = "queryMetadata.json"
PLATFORM_PART = ".platform"

DEFAULT_QUERY_METADATA: Dict[str, Any] = {
    "formatVersion": "202502",
    "computeEngineSettings": {},
    "name": "Dataflow",
    "queryGroups": [],
    "documentLocale": "en-US",
    "queriesMetadata": {},
}


def _encode_b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("utf-8")


def _decode_b64(payload: str) -> str:
    return base64.b64decode(payload).decode("utf-8-sig")


def _decode_json_part(part: DefinitionPart) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(_decode_b64(part.payload))
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Could not decode definition part '{part.path}' as JSON: {e}")
        return None


def decode_definition(definition: DataflowDefinition) -> DecodedDataflowDefinition:
    """Decodes the Base64 parts of a dataflow definition into readable content."""
    decoded = DecodedDataflowDefinition(raw_parts=list(definition.parts))
    for part in definition.parts:
        if part.path == QUERY_METADATA_PART:
            decoded.query_metadata = _decode_json_part(part)
        elif part.path == MASHUP_PART:
            decoded.mashup_query = _decode_b64(part.payload)
        elif part.path == PLATFORM_PART:
            decoded.platform_metadata = _decode_json_part(part)
    return decoded


def build_query_metadata(
    query_names: Sequence[str],
    existing: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Rebuilds queryMetadata.json so `queriesMetadata` lists exactly `query_names`.

    Entries for queries that already existed are kept (so their queryId survives),
    new queries get a fresh queryId, and queries no longer in the document are dropped.
    """
    metadata = copy.deepcopy(existing) if existing else copy.deepcopy(DEFAULT_QUERY_METADATA)
    previous = metadata.get("queriesMetadata") or {}

    queries_metadata: Dict[str, Any] = {}
    for name in query_names:
        if name in queries_metadata:
            continue
        if name in previous:
            queries_metadata[name] = previous[name]
        else:
            queries_metadata[name] = {"queryId": str(uuid.uuid4()), "queryName": name, "loadEnabled": True}

    dropped = [name for name in previous if name not in queries_metadata]
    if dropped:
        logger.info(f"Removing metadata for queries no longer in the document: {dropped}")

    metadata["queriesMetadata"] = queries_metadata
    return metadata


def apply_mashup_document(
    definition: DataflowDefinition,
    document: str,
    queries: List[Tuple[str, str, Optional[str]]],
) -> DataflowDefinition:
    """
    Returns a new definition whose mashup.pq is `document` and whose queryMetadata.json
    matches `queries` (name, code, attribute). Other parts are carried over untouched.
    """
    existing_metadata = None
    other_parts: List[DefinitionPart] = []
    for part in definition.parts:
        if part.path == QUERY_METADATA_PART:
            existing_metadata = _decode_json_part(part)
        elif part.path != MASHUP_PART:
            other_parts.append(part)

    metadata = build_query_metadata([name for name, _, _ in queries], existing_metadata)
    parts = [
        DefinitionPart(path=QUERY_METADATA_PART, payload=_encode_b64(json.dumps(metadata, indent=2))),
        DefinitionPart(path=MASHUP_PART, payload=_encode_b64(document)),
        *other_parts,
    ]
    return DataflowDefinition(parts=parts)
