import base64
import json

from dataflowmcp_server.dataflow_definitions import (
    MASHUP_PART,
    PLATFORM_PART,
    QUERY_METADATA_PART,
    apply_mashup_document,
    build_query_metadata,
    decode_definition,
)
from dataflowmcp_server.fabric_models import DataflowDefinition, DefinitionPart


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("utf-8")


def _definition(mashup: str, metadata: dict) -> DataflowDefinition:
    return DataflowDefinition(parts=[
        DefinitionPart(path=QUERY_METADATA_PART, payload=_b64(json.dumps(metadata))),
        DefinitionPart(path=MASHUP_PART, payload=_b64(mashup)),
        DefinitionPart(path=PLATFORM_PART, payload=_b64(json.dumps({"metadata": {"type": "Dataflow"}}))),
    ])


EXISTING_METADATA = {
    "formatVersion": "202502",
    "name": "Sales",
    "queriesMetadata": {
        "Orders": {"queryId": "11111111-1111-1111-1111-111111111111", "queryName": "Orders", "loadEnabled": True},
        "Old": {"queryId": "22222222-2222-2222-2222-222222222222", "queryName": "Old", "loadEnabled": False},
    },
}


def test_decode_definition_reads_all_known_parts():
    decoded = decode_definition(_definition("section Section1;", EXISTING_METADATA))
    assert decoded.mashup_query == "section Section1;"
    assert decoded.query_metadata["name"] == "Sales"
    assert decoded.platform_metadata == {"metadata": {"type": "Dataflow"}}
    assert len(decoded.raw_parts) == 3


def test_decode_definition_tolerates_bom_and_bad_json():
    definition = DataflowDefinition(parts=[
        DefinitionPart(path=MASHUP_PART, payload=base64.b64encode("\ufeffsection S;".encode("utf-8")).decode()),
        DefinitionPart(path=QUERY_METADATA_PART, payload=_b64("{not json")),
    ])
    decoded = decode_definition(definition)
    assert decoded.mashup_query == "section S;"
    assert decoded.query_metadata is None


def test_build_query_metadata_keeps_ids_and_drops_removed_queries():
    metadata = build_query_metadata(["Orders", "Customers"], EXISTING_METADATA)
    queries = metadata["queriesMetadata"]
    assert list(queries) == ["Orders", "Customers"]
    assert queries["Orders"]["queryId"] == "11111111-1111-1111-1111-111111111111"
    assert queries["Customers"]["queryName"] == "Customers"
    assert queries["Customers"]["loadEnabled"] is True
    assert queries["Customers"]["queryId"]
    assert metadata["name"] == "Sales"
    # input is not mutated
    assert "Old" in EXISTING_METADATA["queriesMetadata"]


def test_build_query_metadata_defaults_when_no_existing():
    metadata = build_query_metadata(["A", "A"])
    assert metadata["formatVersion"] == "202502"
    assert list(metadata["queriesMetadata"]) == ["A"]


def test_apply_mashup_document_replaces_mashup_and_keeps_other_parts():
    current = _definition("section Section1;\nshared Orders = 1;", EXISTING_METADATA)
    document = "section Section1;\nshared Orders = 2;\nshared Customers = 3;"
    updated = apply_mashup_document(current, document, [("Orders", "2", None), ("Customers", "3", None)])

    assert [p.path for p in updated.parts] == [QUERY_METADATA_PART, MASHUP_PART, PLATFORM_PART]
    decoded = decode_definition(updated)
    assert decoded.mashup_query == document
    assert set(decoded.query_metadata["queriesMetadata"]) == {"Orders", "Customers"}
    assert decoded.platform_metadata == {"metadata": {"type": "Dataflow"}}
