from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal

import httpx
import numpy as np
from PIL import Image, ImageDraw

from ..errors import ModelLoadError
from ..models import (
    DropTestResult,
    FluidResult,
    MotionResult,
    SimulationJob,
    SimulationKind,
    StressTestResult,
)
from ..utils import ensure_dir
from .model_loader import ModelMesh, load_model, placeholder_box

logger = logging.getLogger(__name__)

ModelState = Literal["empty", "loading", "loaded", "load_failed"]

DEFAULT_DROP_HEIGHT = 5.0
STRESS_COMPRESSION = 0.3
FLUID_TRAVEL = 5.0
DEFAULT_CAMERA = (5.0, 5.0, 5.0)


@dataclass(frozen=True)
class FrameReadback:
    frame: int
    totalFrames: int
    progressFraction: float

    def as_dict(self) -> dict[str, Any]:
        return {"frame": self.frame, "totalFrames": self.totalFrames, "progressFraction": self.progressFraction}


@dataclass(frozen=True)
class Transform:
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    scale: tuple[float, float, float] = (1.0, 1.0, 1.0)
    rotation: tuple[float, float, float] = (0.0, 0.0, 0.0)

    def rotation_matrix(self) -> np.ndarray:
        """XYZ Euler angles in radians, applied X first."""
        rx, ry, rz = self.rotation
        cx, sx = np.cos(rx), np.sin(rx)
        cy, sy = np.cos(ry), np.sin(ry)
        cz, sz = np.cos(rz), np.sin(rz)
        x = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
        y = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
        z = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
        return z @ y @ x

    def apply(self, points: np.ndarray) -> np.ndarray:
        scaled = points * np.asarray(self.scale, dtype=np.float64)
        if any(self.rotation):
            scaled = scaled @ self.rotation_matrix().T
        return scaled + np.asarray(self.position, dtype=np.float64)


IDENTITY = Transform()


@dataclass
class SceneOptions:
    wireframe: bool = False
    show_axes: bool = True
    show_grid: bool = True
    camera_position: tuple[float, float, float] = DEFAULT_CAMERA
    camera_target: tuple[float, float, float] = (0.0, 0.0, 0.0)


def _drop_transform(results: DropTestResult | None, fraction: float) -> Transform:
    start = DEFAULT_DROP_HEIGHT
    if results is not None and results.drops:
        start = max(drop.dropHeight for drop in results.drops)
    return Transform(position=(0.0, start * (1.0 - fraction), 0.0))


def _stress_transform(results: StressTestResult | None, fraction: float) -> Transform:
    displacements = np.array(
        [step.displacement for step in results.loadSteps] if results is not None else [],
        dtype=np.float64,
    )
    if displacements.size == 0 or float(np.max(displacements)) <= 0.0:
        return Transform(scale=(1.0, 1.0 - STRESS_COMPRESSION * fraction, 1.0))
    # Load step i is reached at (i + 1) / n of the timeline, starting undeformed.
    steps = np.linspace(0.0, 1.0, displacements.size + 1)
    current = float(np.interp(fraction, steps, np.concatenate(([0.0], displacements))))
    ratio = current / float(np.max(displacements))
    return Transform(scale=(1.0, 1.0 - STRESS_COMPRESSION * ratio, 1.0))


def _motion_transform(results: MotionResult | None, fraction: float) -> Transform:
    if results is None or not results.trajectory:
        return IDENTITY
    times = np.array([point.time for point in results.trajectory], dtype=np.float64)
    positions = np.array([point.position for point in results.trajectory], dtype=np.float64)
    if times.size == 1 or times[-1] <= times[0]:
        return Transform(position=tuple(float(v) for v in positions[0]))
    t = times[0] + fraction * (times[-1] - times[0])
    position = tuple(float(np.interp(t, times, positions[:, axis])) for axis in range(3))
    return Transform(position=position)


def compute_transform(kind: SimulationKind, results: Any, fraction: float) -> Transform:
    """Per-kind pose of the model at ``fraction`` (0..1) of the playback timeline."""
    fraction = min(max(fraction, 0.0), 1.0)
    if kind == SimulationKind.drop_test:
        return _drop_transform(results if isinstance(results, DropTestResult) else None, fraction)
    if kind == SimulationKind.stress_test:
        return _stress_transform(results if isinstance(results, StressTestResult) else None, fraction)
    if kind == SimulationKind.motion:
        return _motion_transform(results if isinstance(results, MotionResult) else None, fraction)
    if kind == SimulationKind.fluid:
        travel = FLUID_TRAVEL * fraction if results is None or isinstance(results, FluidResult) else 0.0
        return Transform(position=(travel, 0.0, 0.0))
    return IDENTITY


class PlaybackRenderer:
    """Observer of the active job that animates its results over a looping timeline.

    ``source`` is read on every tick; the renderer never writes job state.
    """

    def __init__(
        self,
        source: Callable[[], SimulationJob | None],
        *,
        total_frames: int = 100,
        fps: int = 30,
        on_frame: Callable[[FrameReadback], None] | None = None,
    ):
        if total_frames <= 0:
            raise ValueError("total_frames must be positive")
        self._source = source
        self.total_frames = total_frames
        self.fps = fps
        self.on_frame = on_frame
        self.is_playing = False
        self.frame = 0
        self.transform = IDENTITY
        self.scene = SceneOptions()
        self.model: ModelMesh | None = None
        self.model_state: ModelState = "empty"
        self.model_error: str | None = None
        self._elapsed = 0.0

    @property
    def readback(self) -> FrameReadback:
        return FrameReadback(
            frame=self.frame,
            totalFrames=self.total_frames,
            progressFraction=self.frame / self.total_frames,
        )

    def play(self) -> None:
        self.is_playing = True

    def pause(self) -> None:
        self.is_playing = False

    def toggle(self) -> bool:
        self.is_playing = not self.is_playing
        return self.is_playing

    def reset(self) -> None:
        self.is_playing = False
        self._elapsed = 0.0
        self.frame = 0
        self.transform = IDENTITY

    def seek(self, frame: int) -> None:
        self.frame = frame % self.total_frames
        self._elapsed = self.frame / self.fps

    def tick(self, dt: float) -> FrameReadback | None:
        job = self._source()
        if job is None:
            return None
        if self.is_playing:
            self._elapsed += dt
            self.frame = int(self._elapsed * self.fps) % self.total_frames
        readback = self.readback
        self.transform = compute_transform(job.kind, job.results, readback.progressFraction)
        if self.on_frame is not None:
            try:
                self.on_frame(readback)
            except Exception:
                logger.exception("on_frame callback failed at frame %d", readback.frame)
        return readback

    # ------------------------------------------------------------------ model

    async def load_model(self, url: str, http: httpx.AsyncClient | None = None) -> ModelMesh | None:
        self.model_state = "loading"
        self.model_error = None
        try:
            mesh = await load_model(url, http)
        except ModelLoadError as exc:
            logger.warning("model load failed for %s: %s", url, exc)
            self.model = None
            self.model_state = "load_failed"
            self.model_error = str(exc)
            return None
        self.model = mesh
        self.model_state = "loaded"
        return mesh

    def model_stats(self) -> dict[str, Any]:
        if self.model is None:
            return {"triangles": 0, "vertices": 0, "format": None, "size": None}
        return {
            "triangles": self.model.triangle_count,
            "vertices": self.model.vertex_count,
            "format": self.model.format,
            "size": [round(float(v), 4) for v in self.model.size],
        }

    # ------------------------------------------------------------------ scene

    def toggle_wireframe(self) -> bool:
        self.scene.wireframe = not self.scene.wireframe
        return self.scene.wireframe

    def toggle_axes(self) -> bool:
        self.scene.show_axes = not self.scene.show_axes
        return self.scene.show_axes

    def toggle_grid(self) -> bool:
        self.scene.show_grid = not self.scene.show_grid
        return self.scene.show_grid

    def reset_camera(self) -> None:
        self.scene.camera_position = DEFAULT_CAMERA
        self.scene.camera_target = (0.0, 0.0, 0.0)

    def snapshot(self, path: Path, size: tuple[int, int] = (512, 512)) -> Path:
        """Write a front-view PNG of the posed model (X right, Y up)."""
        width, height = size
        x_range = (-8.0, 8.0)
        y_range = (-4.0, 12.0)

        def to_pixels(points: np.ndarray) -> list[tuple[float, float]]:
            px = (points[:, 0] - x_range[0]) / (x_range[1] - x_range[0]) * (width - 1)
            py = (y_range[1] - points[:, 1]) / (y_range[1] - y_range[0]) * (height - 1)
            return list(zip(px.tolist(), py.tolist()))

        image = Image.new("RGB", (width, height), (245, 245, 245))
        draw = ImageDraw.Draw(image)

        if self.scene.show_grid:
            for value in range(int(x_range[0]), int(x_range[1]) + 1):
                (x0, y0), (x1, y1) = to_pixels(np.array([[value, y_range[0]], [value, y_range[1]]], dtype=np.float32))
                draw.line([(x0, y0), (x1, y1)], fill=(215, 215, 215))
            for value in range(int(y_range[0]), int(y_range[1]) + 1):
                (x0, y0), (x1, y1) = to_pixels(np.array([[x_range[0], value], [x_range[1], value]], dtype=np.float32))
                draw.line([(x0, y0), (x1, y1)], fill=(215, 215, 215))

        if self.scene.show_axes:
            origin, x_tip, y_tip = to_pixels(np.array([[0, 0], [2, 0], [0, 2]], dtype=np.float32))
            draw.line([origin, x_tip], fill=(220, 40, 40), width=2)
            draw.line([origin, y_tip], fill=(40, 170, 40), width=2)

        mesh = self.model or placeholder_box()
        posed = self.transform.apply(mesh.normalized_triangles())
        for triangle in posed:
            polygon = to_pixels(triangle)
            if self.scene.wireframe:
                draw.polygon(polygon, outline=(60, 90, 160))
            else:
                draw.polygon(polygon, fill=(90, 120, 190))

        ensure_dir(path.parent)
        image.save(path, format="PNG")
        return path


class TickScheduler:
    """Single tick source driving ``callback(dt)`` from an asyncio task."""

    def __init__(
        self,
        callback: Callable[[float], Any],
        interval_s: float = 1.0 / 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._callback = callback
        self._interval = interval_s
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="playback-ticks")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        last = self._clock()
        while True:
            await asyncio.sleep(self._interval)
            now = self._clock()
            try:
                self._callback(now - last)
            except Exception:
                logger.exception("tick callback failed")
            last = now
            self.ticks += 1
