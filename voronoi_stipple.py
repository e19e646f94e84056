# voronoi_stipple.py
# Weighted Voronoi stippling by frame-by-frame Lloyd relaxation

import logging
from dataclasses import dataclass, replace

import numpy as np

from voronoi_partition import Partition

logger = logging.getLogger(__name__)

POINTS_COUNT = 5000
LERP_SPEED = 0.5

# Perceptual luminance coefficients for channels 1, 2, 3; alpha is ignored
LUMINANCE_WEIGHTS = (0.2126, 0.7152, 0.0722)


class StippleError(Exception):
    """Base class for relaxation errors."""


class SamplingExhausted(StippleError):
    """The initial sampler stopped finding dark enough pixels."""

    def __init__(self, accepted, requested, draws):
        self.accepted = accepted
        self.requested = requested
        self.draws = draws
        super().__init__(
            f"Sampled only {accepted} of {requested} points after {draws} draws; the grid is too bright"
        )


class DimensionMismatch(StippleError, ValueError):
    """A luminance grid does not match the size bound at initialization."""

    def __init__(self, expected, actual):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected a {expected[0]}x{expected[1]} luminance grid, got {actual[0]}x{actual[1]}")


def linear_weight(luminance):
    """Pixel weight 1 - L/255."""
    return 1.0 - np.asarray(luminance, dtype=np.float64) / 255.0


def squared_weight(luminance):
    """Pixel weight (1 - L/255)^2; favours the darkest tones."""
    return linear_weight(luminance) ** 2


WEIGHT_CURVES = {"linear": linear_weight, "squared": squared_weight}


def resolve_weight_curve(curve):
    if callable(curve):
        return curve
    try:
        return WEIGHT_CURVES[curve]
    except (KeyError, TypeError):
        raise ValueError(f"Unknown weight curve {curve!r}, expected one of {sorted(WEIGHT_CURVES)} or a callable") from None


@dataclass(frozen=True)
class StippleConfig:
    """Relaxation parameters, fixed for a session."""

    point_count: int = POINTS_COUNT
    blend_factor: float = LERP_SPEED
    weight_curve: object = "squared"
    seed: object = None
    max_stall: object = None

    def __post_init__(self):
        if isinstance(self.point_count, bool) or not isinstance(self.point_count, (int, np.integer)):
            raise ValueError(f"point_count must be an integer, got {self.point_count!r}")
        if self.point_count < 1:
            raise ValueError(f"point_count must be at least 1, got {self.point_count}")
        if not 0.0 < self.blend_factor <= 1.0:
            raise ValueError(f"blend_factor must be in (0, 1], got {self.blend_factor}")
        resolve_weight_curve(self.weight_curve)
        if self.max_stall is not None and self.max_stall < 1:
            raise ValueError(f"max_stall must be positive, got {self.max_stall}")


@dataclass(frozen=True, eq=False)
class CellSums:
    """Per-cell sums of one accumulation pass, indexed like the points."""

    x_sum: np.ndarray
    y_sum: np.ndarray
    weight_sum: np.ndarray
    count: np.ndarray


@dataclass(frozen=True, eq=False)
class FrameOutput:
    """What a renderer needs from one tick."""

    points: np.ndarray
    weights: np.ndarray
    max_weight: float
    displacement: float
    frame: int


@dataclass(frozen=True, eq=False)
class StippleState:
    """Point set and its partition; replaced, never mutated, every tick."""

    points: np.ndarray
    partition: Partition
    width: int
    height: int
    config: StippleConfig
    frame: int = 0

    @classmethod
    def from_points(cls, points, width, height, config=None, frame=0):
        """Resume from a known point set, e.g. the last good frame."""
        partition = Partition(points, width, height)
        config = config or StippleConfig(point_count=len(partition.points))
        if config.point_count != len(partition.points):
            raise ValueError(f"Config expects {config.point_count} points, got {len(partition.points)}")
        if np.any(partition.points < 0) or np.any(partition.points[:, 0] > width) or np.any(partition.points[:, 1] > height):
            raise ValueError("Points must lie inside the grid")
        return cls(partition.points, partition, int(width), int(height), config, frame)


def compute_luminance(image, channel_order="rgb"):
    """Luminance grid in [0, 255] from a grey (H, W) or colour (H, W, 3|4) array."""
    img = np.asarray(image)
    if img.ndim == 2:
        return check_grid(img)
    if img.ndim != 3 or img.shape[2] not in (3, 4):
        raise ValueError(f"Expected an (H, W), (H, W, 3) or (H, W, 4) array, got shape {img.shape}")

    channels = img[..., :3].astype(np.float64)
    if channel_order == "bgr":
        channels = channels[..., ::-1]
    elif channel_order != "rgb":
        raise ValueError(f"channel_order must be 'rgb' or 'bgr', got {channel_order!r}")

    # Coefficients sum to 1 only up to rounding
    return check_grid(np.clip(channels @ np.array(LUMINANCE_WEIGHTS), 0.0, 255.0))


def check_grid(luminance):
    """Validate a luminance grid and return it as float64."""
    grid = np.asarray(luminance, dtype=np.float64)
    if grid.ndim != 2 or grid.size == 0:
        raise ValueError(f"Luminance grid must be a non-empty 2-D array, got shape {grid.shape}")
    if not np.all(np.isfinite(grid)):
        raise ValueError("Luminance grid contains NaN or infinite values")
    if grid.min() < 0.0 or grid.max() > 255.0:
        raise ValueError(f"Luminance must lie in [0, 255], got [{grid.min()}, {grid.max()}]")
    return grid


def sample_points(luminance, count, rng, max_stall=None):
    """Rejection-sample `count` pixels, preferring dark ones. Returns (points, draws).

    Each draw picks a uniform pixel and a uniform integer r in [0, 100); the
    pixel is kept when r >= its luminance, so black pixels are always kept and
    anything at 100 or brighter never is. The tie r == L is accepted on purpose
    so an all-black grid needs exactly `count` draws. Draws are generated in batches but
    consumed in order. After `max_stall` rejections in a row SamplingExhausted
    is raised.
    """
    grid = check_grid(luminance)
    h, w = grid.shape
    if max_stall is None:
        max_stall = max(100_000, 10 * w * h)
    batch = max(count, 1024)

    chosen = []
    accepted = 0
    last = 0  # draws consumed up to the latest acceptance
    drawn = 0
    while accepted < count:
        xs = rng.integers(0, w, size=batch)
        ys = rng.integers(0, h, size=batch)
        rs = rng.integers(0, 100, size=batch)

        hits = np.flatnonzero(rs >= grid[ys, xs])[: count - accepted]
        if len(hits):
            ends = drawn + hits + 1
            runs = np.diff(np.concatenate(([last], ends))) - 1
            stalled = np.flatnonzero(runs >= max_stall)
            if len(stalled):
                raise SamplingExhausted(accepted + int(stalled[0]), count, last + max_stall)
            chosen.append(np.column_stack((xs[hits], ys[hits])))
            accepted += len(hits)
            last = int(ends[-1])

        drawn += batch
        if accepted < count and drawn - last >= max_stall:
            raise SamplingExhausted(accepted, count, last + max_stall)

    logger.debug(f"Sampled {count} points in {last} draws")
    return np.vstack(chosen).astype(np.float64), last


def accumulate(luminance, partition, weight_curve="squared", use_hint=False):
    """Route every pixel to its cell and sum x*w, y*w, w and 1 per cell.

    Pixels are visited in raster order against a partition that stays frozen
    for the whole pass. With `use_hint` each pixel is located one by one,
    starting from the previous pixel's cell; otherwise all pixels are located
    in one vectorised query. Both give the same cells.
    """
    grid = check_grid(luminance)
    h, w = grid.shape
    if not partition.matches(w, h):
        raise DimensionMismatch((partition.width, partition.height), (w, h))

    weight = np.asarray(resolve_weight_curve(weight_curve)(grid), dtype=np.float64)
    if weight.shape != grid.shape:
        raise ValueError(f"Weight curve returned shape {weight.shape}, expected {grid.shape}")
    weight = np.clip(weight, 0.0, None).ravel()

    ys, xs = np.indices(grid.shape)
    xs = xs.ravel()
    ys = ys.ravel()

    if use_hint:
        owners = np.empty(len(xs), dtype=np.intp)
        hint = 0
        for k, (x, y) in enumerate(zip(xs.tolist(), ys.tolist())):
            hint = partition.locate(x, y, hint)
            owners[k] = hint
    else:
        owners = partition.locate_many(xs, ys)

    n = partition.cell_count
    return CellSums(
        x_sum=np.bincount(owners, weights=xs * weight, minlength=n),
        y_sum=np.bincount(owners, weights=ys * weight, minlength=n),
        weight_sum=np.bincount(owners, weights=weight, minlength=n),
        count=np.bincount(owners, minlength=n),
    )


def lerp_points(a, b, t):
    return a + (b - a) * t


def relax(sums, points, blend_factor):
    """One smoothed Lloyd step. Returns (next points, ink weights).

    A cell without weight keeps its point where it is and gets ink weight 0.
    """
    points = np.asarray(points, dtype=np.float64)
    live = sums.weight_sum > 0

    centroids = points.copy()
    centroids[live, 0] = sums.x_sum[live] / sums.weight_sum[live]
    centroids[live, 1] = sums.y_sum[live] / sums.weight_sum[live]

    weights = np.zeros(len(points))
    weights[live] = sums.weight_sum[live] / np.maximum(sums.count[live], 1)

    return lerp_points(points, centroids, blend_factor), weights


def initialize(luminance, config=None, rng=None):
    """Bind the grid size, sample the initial points and build the first partition."""
    config = config or StippleConfig()
    grid = check_grid(luminance)
    h, w = grid.shape
    if rng is None:
        rng = np.random.default_rng(config.seed)

    points, draws = sample_points(grid, config.point_count, rng, config.max_stall)
    logger.info(f"Initialized {config.point_count} points on a {w}x{h} grid ({draws} draws)")
    return StippleState.from_points(points, w, h, config)


def next_frame(state, luminance):
    """Advance one tick. Returns (new state, frame output); `state` is left untouched."""
    grid = check_grid(luminance)
    if grid.shape != (state.height, state.width):
        raise DimensionMismatch((state.width, state.height), (grid.shape[1], grid.shape[0]))

    sums = accumulate(grid, state.partition, state.config.weight_curve)
    points, weights = relax(sums, state.points, state.config.blend_factor)

    # Rebuilt from the moved points so the next pass sees the current cells
    partition = Partition(points, state.width, state.height)
    new_state = replace(state, points=partition.points, partition=partition, frame=state.frame + 1)

    weights.setflags(write=False)
    displacement = float(np.mean(np.hypot(*(partition.points - state.points).T)))
    output = FrameOutput(
        points=partition.points,
        weights=weights,
        max_weight=float(weights.max()),
        displacement=displacement,
        frame=new_state.frame,
    )
    logger.debug(f"Frame {output.frame}: mean displacement {displacement:.4f}, max weight {output.max_weight:.4f}")
    return new_state, output


def iterate(state, luminance, ticks):
    """Relax against the same grid `ticks` times, yielding (state, output) each tick."""
    for _ in range(ticks):
        state, output = next_frame(state, luminance)
        yield state, output
