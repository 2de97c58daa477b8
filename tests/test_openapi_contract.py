import json
from pathlib import Path

from app.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_every_tagged_route_has_a_declared_tag():
    schema = app.openapi()
    declared = {tag["name"] for tag in schema["tags"]}
    used = {
        tag
        for operations in schema["paths"].values()
        for operation in operations.values()
        for tag in operation.get("tags", [])
    }
    assert used <= declared


def test_error_responses_reference_the_envelope_schema():
    schema = app.openapi()
    operation = schema["paths"]["/agent/verify-pickup"]["post"]
    for status_code in ("400", "403", "429"):
        ref = operation["responses"][status_code]["content"]["application/json"]["schema"]["$ref"]
        assert ref.endswith("/ErrorOut")
