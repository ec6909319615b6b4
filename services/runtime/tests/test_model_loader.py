from __future__ import annotations

import json
import struct

import httpx
import numpy as np
import pytest

from simulation_runtime.errors import ModelLoadError
from simulation_runtime.modules.model_loader import detect_format, load_model, parse_gltf, parse_stl

TRIANGLES = [
    ((0.0, 0.0, 0.0), (2.0, 0.0, 0.0), (0.0, 1.0, 0.0)),
    ((0.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 4.0)),
]


def _binary_stl(triangles) -> bytes:
    body = b"".join(
        struct.pack("<3f", 0.0, 0.0, 1.0)
        + b"".join(struct.pack("<3f", *vertex) for vertex in triangle)
        + struct.pack("<H", 0)
        for triangle in triangles
    )
    return b"\0" * 80 + struct.pack("<I", len(triangles)) + body


def _ascii_stl(triangles) -> bytes:
    lines = ["solid part"]
    for triangle in triangles:
        lines += ["facet normal 0 0 1", "outer loop"]
        lines += [f"vertex {x} {y} {z}" for x, y, z in triangle]
        lines += ["endloop", "endfacet"]
    lines.append("endsolid part")
    return "\n".join(lines).encode("ascii")


GLTF = {
    "asset": {"version": "2.0"},
    "meshes": [{"primitives": [{"attributes": {"POSITION": 0}, "indices": 1}]}],
    "accessors": [
        {"count": 8, "type": "VEC3", "min": [-1.0, 0.0, -0.5], "max": [1.0, 3.0, 0.5]},
        {"count": 36, "type": "SCALAR"},
    ],
}


def _glb(document: dict) -> bytes:
    payload = json.dumps(document).encode("utf-8")
    payload += b" " * (-len(payload) % 4)
    header = struct.pack("<4sII", b"glTF", 2, 12 + 8 + len(payload))
    return header + struct.pack("<II", len(payload), 0x4E4F534A) + payload


def test_binary_and_ascii_stl_parse_to_the_same_bounds():
    binary = parse_stl(_binary_stl(TRIANGLES))
    ascii_mesh = parse_stl(_ascii_stl(TRIANGLES))

    for mesh in (binary, ascii_mesh):
        assert mesh.triangle_count == 2
        assert mesh.vertex_count == 6
        np.testing.assert_allclose(mesh.bounds_min, [0.0, 0.0, 0.0])
        np.testing.assert_allclose(mesh.bounds_max, [2.0, 1.0, 4.0])
        assert mesh.scale == pytest.approx(1.0)


def test_normalized_triangles_fit_four_unit_box():
    mesh = parse_stl(_binary_stl(TRIANGLES))
    flat = mesh.normalized_triangles().reshape(-1, 3)

    extent = flat.max(axis=0) - flat.min(axis=0)
    assert float(extent.max()) == pytest.approx(4.0)
    np.testing.assert_allclose((flat.max(axis=0) + flat.min(axis=0)) / 2, [0.0, 0.0, 0.0], atol=1e-6)


def test_garbage_stl_is_a_load_error():
    with pytest.raises(ModelLoadError):
        parse_stl(b"definitely not a mesh")
    with pytest.raises(ModelLoadError):
        parse_stl(_binary_stl([]))


def test_gltf_and_glb_use_accessor_bounds():
    gltf = parse_gltf(json.dumps(GLTF).encode("utf-8"))
    glb = parse_gltf(_glb(GLTF))

    assert gltf.format == "gltf"
    assert glb.format == "glb"
    for mesh in (gltf, glb):
        np.testing.assert_allclose(mesh.size, [2.0, 3.0, 1.0])
        assert mesh.vertex_count == 8
        assert mesh.triangle_count == 12


def test_gltf_without_bounds_is_a_load_error():
    with pytest.raises(ModelLoadError):
        parse_gltf(json.dumps({"meshes": [], "accessors": []}).encode("utf-8"))


def test_detect_format_ignores_query_strings():
    assert detect_format("https://cdn.test/models/part.STL?token=abc") == "stl"
    assert detect_format("scene.glb") == "glb"
    assert detect_format("scene.gltf") == "gltf"
    assert detect_format("part.obj") == "placeholder"


@pytest.mark.asyncio
async def test_load_model_from_path_url_and_placeholder(tmp_path):
    path = tmp_path / "part.stl"
    path.write_bytes(_binary_stl(TRIANGLES))
    from_disk = await load_model(str(path))
    assert from_disk.triangle_count == 2

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_ascii_stl(TRIANGLES))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        from_url = await load_model("https://cdn.test/part.stl", http)
    assert from_url.triangle_count == 2

    placeholder = await load_model("https://cdn.test/part.step")
    assert placeholder.format == "placeholder"
    np.testing.assert_allclose(placeholder.size, [2.0, 2.0, 2.0])


@pytest.mark.asyncio
async def test_missing_file_and_http_error_raise_load_error(tmp_path):
    with pytest.raises(ModelLoadError):
        await load_model(str(tmp_path / "missing.stl"))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(ModelLoadError):
            await load_model("https://cdn.test/part.glb", http)
