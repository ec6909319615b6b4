from __future__ import annotations

import json
import logging
import re
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

import httpx
import numpy as np

from ..errors import ModelLoadError

logger = logging.getLogger(__name__)

MeshFormat = Literal["stl", "gltf", "glb", "placeholder"]

TARGET_SIZE = 4.0

_STL_RECORD = np.dtype(
    [
        ("normal", "<f4", (3,)),
        ("vertices", "<f4", (3, 3)),
        ("attribute", "<u2"),
    ]
)
_ASCII_VERTEX = re.compile(
    rb"vertex\s+([-+0-9.eE]+)\s+([-+0-9.eE]+)\s+([-+0-9.eE]+)"
)
_GLB_MAGIC = b"glTF"
_GLB_JSON_CHUNK = 0x4E4F534A


@dataclass
class ModelMesh:
    """Triangle soup plus bounds. glTF sources only expose bounds, so their
    triangles are the bounding box."""

    source: str
    format: MeshFormat
    triangles: np.ndarray
    bounds_min: np.ndarray
    bounds_max: np.ndarray
    vertex_count: int
    triangle_count: int

    @property
    def size(self) -> np.ndarray:
        return self.bounds_max - self.bounds_min

    @property
    def center(self) -> np.ndarray:
        return (self.bounds_max + self.bounds_min) / 2.0

    @property
    def scale(self) -> float:
        max_size = float(np.max(self.size))
        if max_size <= 0:
            return 1.0
        return TARGET_SIZE / max_size

    def normalized_triangles(self) -> np.ndarray:
        """Triangles centred on the origin and scaled so the largest side is 4 units."""
        return (self.triangles - self.center) * self.scale


def _box_triangles(bounds_min: np.ndarray, bounds_max: np.ndarray) -> np.ndarray:
    x0, y0, z0 = bounds_min
    x1, y1, z1 = bounds_max
    corners = np.array(
        [
            [x0, y0, z0],
            [x1, y0, z0],
            [x1, y1, z0],
            [x0, y1, z0],
            [x0, y0, z1],
            [x1, y0, z1],
            [x1, y1, z1],
            [x0, y1, z1],
        ],
        dtype=np.float32,
    )
    faces = [
        (0, 1, 2), (0, 2, 3),
        (4, 6, 5), (4, 7, 6),
        (0, 4, 5), (0, 5, 1),
        (3, 2, 6), (3, 6, 7),
        (0, 3, 7), (0, 7, 4),
        (1, 5, 6), (1, 6, 2),
    ]
    return corners[np.array(faces)]


def placeholder_box(source: str = "placeholder") -> ModelMesh:
    bounds_min = np.array([-1.0, -1.0, -1.0], dtype=np.float32)
    bounds_max = np.array([1.0, 1.0, 1.0], dtype=np.float32)
    return ModelMesh(
        source=source,
        format="placeholder",
        triangles=_box_triangles(bounds_min, bounds_max),
        bounds_min=bounds_min,
        bounds_max=bounds_max,
        vertex_count=24,
        triangle_count=12,
    )


def _mesh_from_triangles(source: str, triangles: np.ndarray) -> ModelMesh:
    if triangles.size == 0:
        raise ModelLoadError(f"{source} contains no triangles")
    if not np.all(np.isfinite(triangles)):
        raise ModelLoadError(f"{source} contains non-finite vertex coordinates")
    flat = triangles.reshape(-1, 3)
    return ModelMesh(
        source=source,
        format="stl",
        triangles=triangles.astype(np.float32),
        bounds_min=flat.min(axis=0),
        bounds_max=flat.max(axis=0),
        vertex_count=int(flat.shape[0]),
        triangle_count=int(triangles.shape[0]),
    )


def parse_stl(data: bytes, source: str = "model.stl") -> ModelMesh:
    if len(data) >= 84:
        (count,) = struct.unpack_from("<I", data, 80)
        if len(data) == 84 + count * _STL_RECORD.itemsize:
            records = np.frombuffer(data, dtype=_STL_RECORD, count=count, offset=84)
            return _mesh_from_triangles(source, np.array(records["vertices"], dtype=np.float32))

    if data.lstrip().startswith(b"solid"):
        matches = _ASCII_VERTEX.findall(data)
        if len(matches) % 3 != 0:
            raise ModelLoadError(f"{source}: ASCII STL has {len(matches)} vertices, not a multiple of 3")
        try:
            coords = np.array([[float(value) for value in match] for match in matches], dtype=np.float32)
        except ValueError as exc:
            raise ModelLoadError(f"{source}: malformed vertex coordinates") from exc
        return _mesh_from_triangles(source, coords.reshape(-1, 3, 3))

    raise ModelLoadError(f"{source} is neither binary nor ASCII STL")


def _gltf_document(data: bytes, source: str) -> dict:
    if data[:4] == _GLB_MAGIC:
        if len(data) < 20:
            raise ModelLoadError(f"{source}: truncated GLB header")
        chunk_length, chunk_type = struct.unpack_from("<II", data, 12)
        if chunk_type != _GLB_JSON_CHUNK:
            raise ModelLoadError(f"{source}: first GLB chunk is not JSON")
        raw = data[20 : 20 + chunk_length]
    else:
        raw = data
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ModelLoadError(f"{source}: malformed glTF JSON") from exc
    if not isinstance(document, dict):
        raise ModelLoadError(f"{source}: glTF root must be an object")
    return document


def parse_gltf(data: bytes, source: str = "model.gltf") -> ModelMesh:
    document = _gltf_document(data, source)
    accessors = document.get("accessors") or []
    mins: list[list[float]] = []
    maxs: list[list[float]] = []
    vertex_count = 0
    triangle_count = 0

    for mesh in document.get("meshes") or []:
        for primitive in mesh.get("primitives") or []:
            position_index = (primitive.get("attributes") or {}).get("POSITION")
            if position_index is None or position_index >= len(accessors):
                continue
            accessor = accessors[position_index]
            if "min" not in accessor or "max" not in accessor:
                continue
            mins.append(accessor["min"][:3])
            maxs.append(accessor["max"][:3])
            count = int(accessor.get("count", 0))
            vertex_count += count
            indices = primitive.get("indices")
            if indices is not None and indices < len(accessors):
                triangle_count += int(accessors[indices].get("count", 0)) // 3
            else:
                triangle_count += count // 3

    if not mins:
        raise ModelLoadError(f"{source}: no POSITION accessor with bounds")

    bounds_min = np.min(np.array(mins, dtype=np.float32), axis=0)
    bounds_max = np.max(np.array(maxs, dtype=np.float32), axis=0)
    return ModelMesh(
        source=source,
        format="glb" if data[:4] == _GLB_MAGIC else "gltf",
        triangles=_box_triangles(bounds_min, bounds_max),
        bounds_min=bounds_min,
        bounds_max=bounds_max,
        vertex_count=vertex_count,
        triangle_count=triangle_count,
    )


def detect_format(url: str) -> MeshFormat:
    suffix = Path(urlparse(url).path).suffix.lower()
    if suffix == ".stl":
        return "stl"
    if suffix == ".gltf":
        return "gltf"
    if suffix == ".glb":
        return "glb"
    return "placeholder"


async def _fetch_bytes(url: str, http: httpx.AsyncClient | None) -> bytes:
    scheme = urlparse(url).scheme
    if scheme in ("http", "https"):
        try:
            if http is not None:
                response = await http.get(url)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ModelLoadError(f"could not download {url}: {exc}") from exc
        return response.content

    path = Path(urlparse(url).path if scheme == "file" else url).expanduser()
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ModelLoadError(f"could not read {path}: {exc}") from exc


async def load_model(url: str, http: httpx.AsyncClient | None = None) -> ModelMesh:
    fmt = detect_format(url)
    if fmt == "placeholder":
        logger.info("no mesh loader for %s; using placeholder box", url)
        return placeholder_box(url)

    data = await _fetch_bytes(url, http)
    if fmt == "stl":
        mesh = parse_stl(data, url)
    else:
        mesh = parse_gltf(data, url)
    logger.info("loaded %s model %s (%d triangles)", mesh.format, url, mesh.triangle_count)
    return mesh
