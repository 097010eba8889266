import cbor2
import pytest

from orbitkit.manifest import Manifest, create_db_manifest


def test_cbor_wire_bytes():
    assert Manifest("a", "b", "c").to_cbor() == b"\xa3dnameaadtypeabqaccess_controllerac"


def test_cbor_round_trip():
    manifest = Manifest("second", "eventlog", "/ipfs/bafyexample")
    assert Manifest.from_cbor(manifest.to_cbor()) == manifest


def test_create_db_manifest_stores_manifest():
    stored = {}

    def writer(data):
        stored["data"] = data
        return "cid-1"

    result = create_db_manifest(writer, "second", "eventlog", "bafyexample")
    assert result == "cid-1"
    manifest = Manifest.from_cbor(stored["data"])
    assert manifest.name == "second"
    assert manifest.type == "eventlog"
    assert manifest.access_controller.startswith("/ipfs")
    assert manifest.access_controller == "/ipfs/bafyexample"


def test_access_controller_path_is_cleaned():
    stored = []
    create_db_manifest(stored.append, "n", "keyvalue", "/abc/")
    assert Manifest.from_cbor(stored[0]).access_controller == "/ipfs/abc"


def test_writer_failure_is_wrapped():
    def writer(_data):
        raise OSError("disk full")

    with pytest.raises(RuntimeError, match="unable to write cbor data") as info:
        create_db_manifest(writer, "n", "eventlog", "x")
    assert isinstance(info.value.__cause__, OSError)


@pytest.mark.parametrize(
    "data",
    [cbor2.dumps([1, 2]), cbor2.dumps({"name": 3}), b"\xff\xff"],
)
def test_from_cbor_rejects_invalid_data(data):
    with pytest.raises(ValueError):
        Manifest.from_cbor(data)