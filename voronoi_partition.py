# voronoi_partition.py
# Delaunay-backed point location and bounded Voronoi cells

import logging

import numpy as np
from scipy.spatial import Delaunay, QhullError, Voronoi, cKDTree
from shapely.geometry import MultiPoint, Polygon, box

logger = logging.getLogger(__name__)

# Nearest sites fetched per pixel by bulk queries; enough to see every tie on a pixel lattice
TIE_CANDIDATES = 8


class Partition:
    """Voronoi partition of a fixed point set over the viewport [0, width] x [0, height].

    Built once per frame and never mutated. Every pixel is owned by the point
    nearest to it; ties go to the lowest point index. Coincident points collapse
    onto one site owned by the first of them, the others own nothing.
    """

    def __init__(self, points, width, height):
        points = np.array(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 2 or len(points) == 0:
            raise ValueError(f"Expected a non-empty (N, 2) point array, got shape {points.shape}")
        if not np.all(np.isfinite(points)):
            raise ValueError("Point coordinates must be finite")
        if width <= 0 or height <= 0:
            raise ValueError(f"Viewport must be non-empty, got {width}x{height}")

        points.setflags(write=False)
        self.points = points
        self.width = int(width)
        self.height = int(height)

        # np.unique keeps the first occurrence, i.e. the lowest index of each group
        sites, first, inverse = np.unique(points, axis=0, return_index=True, return_inverse=True)
        self._sites = sites
        self._owner = first
        self._site_of = inverse.reshape(-1)
        self._tree = cKDTree(sites)
        self._delaunay = None
        self._neighbors = None
        self._loose = np.empty(0, dtype=np.intp)

        if len(sites) >= 3:
            try:
                self._delaunay = Delaunay(sites)
            except QhullError:
                logger.debug("Sites are collinear, point location falls back to the k-d tree")
        else:
            logger.debug(f"Only {len(sites)} distinct site(s), point location falls back to the k-d tree")

        if self._delaunay is not None:
            self._neighbors = self._delaunay.vertex_neighbor_vertices
            indptr = self._neighbors[0]
            # Sites qhull dropped as coplanar have no edges and are checked by hand
            self._loose = np.flatnonzero(np.diff(indptr) == 0)

    @property
    def cell_count(self):
        return len(self.points)

    @property
    def bounds(self):
        return (0, 0, self.width, self.height)

    def matches(self, width, height):
        return self.width == width and self.height == height

    def _dist2(self, site, x, y):
        dx = self._sites[site, 0] - x
        dy = self._sites[site, 1] - y
        return dx * dx + dy * dy

    def _walk(self, site, x, y):
        """Greedy descent along Delaunay edges. Returns (site, squared distance)."""
        indptr, indices = self._neighbors
        best = self._dist2(site, x, y)
        while True:
            nbrs = indices[indptr[site] : indptr[site + 1]]
            d = self._dist2(nbrs, x, y)
            k = int(np.argmin(d))
            if d[k] >= best:
                return site, best
            site, best = int(nbrs[k]), d[k]

    def _lowest_tied(self, site, best, x, y):
        indptr, indices = self._neighbors

        # Sites at equal distance are cocircular and therefore connected by Delaunay edges
        tied = {site}
        stack = [site]
        while stack:
            s = stack.pop()
            for n in indices[indptr[s] : indptr[s + 1]].tolist():
                if n not in tied and self._dist2(n, x, y) == best:
                    tied.add(n)
                    stack.append(n)

        if len(self._loose):
            d = self._dist2(self._loose, x, y)
            nearest = d.min()
            if nearest < best:
                return int(self._owner[self._loose[d == nearest]].min())
            if nearest == best:
                tied.update(self._loose[d == best].tolist())

        return int(min(self._owner[s] for s in tied))

    def _brute_force(self, x, y):
        d = self._dist2(np.arange(len(self._sites)), x, y)
        return int(self._owner[d == d.min()].min())

    def locate(self, x, y, hint=None):
        """Index of the point whose cell contains (x, y).

        `hint` is a point index to start the walk from, typically the answer for
        the previous pixel. It only affects speed.
        """
        if self._delaunay is None:
            return self._brute_force(x, y)

        start = None
        if hint is not None and 0 <= hint < len(self.points):
            start = int(self._site_of[hint])
            indptr = self._neighbors[0]
            if indptr[start] == indptr[start + 1]:
                start = None
        if start is None:
            _, start = self._tree.query((x, y))
            start = int(start)
            if start in self._loose:
                return self._brute_force(x, y)

        site, best = self._walk(start, x, y)
        return self._lowest_tied(site, best, x, y)

    def locate_many(self, xs, ys):
        """Vectorised `locate` for arrays of coordinates."""
        xs = np.asarray(xs, dtype=np.float64).ravel()
        ys = np.asarray(ys, dtype=np.float64).ravel()
        if xs.shape != ys.shape:
            raise ValueError("xs and ys must have the same length")

        k = min(TIE_CANDIDATES, len(self._sites))
        _, idx = self._tree.query(np.column_stack((xs, ys)), k=k)
        if k == 1:
            idx = idx[:, None]

        dx = self._sites[idx, 0] - xs[:, None]
        dy = self._sites[idx, 1] - ys[:, None]
        d = dx * dx + dy * dy
        tied = d == d.min(axis=1)[:, None]
        owners = np.where(tied, self._owner[idx], len(self.points)).min(axis=1)

        if k < len(self._sites):
            # More ties than candidates: rare enough to resolve one by one
            for i in np.flatnonzero(tied.all(axis=1)):
                owners[i] = self.locate(xs[i], ys[i])
        return owners.astype(np.intp)

    def cell_polygons(self, debug=False):
        """Voronoi cell of every point clipped to the viewport.

        Returns a list of shapely polygons aligned with the points; a point that
        owns no area gets an empty polygon.
        """
        w, h = self.width, self.height
        viewport = box(*self.bounds)

        # Ring of far-away points bounds every region; a margin beyond the
        # viewport diagonal keeps the ring's cells from reaching the viewport
        margin = 2 * max(w, h)
        num = max(10, max(w, h) // 50)
        top = [[x, -margin] for x in np.linspace(-margin, w + margin, num=num)]
        right = [[w + margin, y] for y in np.linspace(-margin, h + margin, num=num)]
        bottom = [[x, h + margin] for x in np.linspace(w + margin, -margin, num=num)]
        left = [[-margin, y] for y in np.linspace(h + margin, -margin, num=num)]
        ring = np.unique(np.array(top + right + bottom + left), axis=0)

        vor = Voronoi(np.vstack([self._sites, ring]))

        counts = {"finite": 0, "duplicate": 0, "empty": 0, "unbounded": 0, "degenerate": 0}
        polygons = []
        for i in range(len(self.points)):
            site = self._site_of[i]
            if self._owner[site] != i:
                counts["duplicate"] += 1
                polygons.append(Polygon())
                continue

            region = vor.regions[vor.point_region[site]]
            if not region:
                counts["empty"] += 1
                polygons.append(Polygon())
                continue

            if -1 in region:
                counts["unbounded"] += 1
                logger.warning(f"Point {i}: unexpected unbounded region in bounded Voronoi")
                polygons.append(Polygon())
                continue

            # Voronoi cells are convex, so the hull restores vertex order
            cell = MultiPoint(vor.vertices[region]).convex_hull.intersection(viewport)
            if cell.geom_type != "Polygon" or cell.area <= 0:
                counts["degenerate"] += 1
                polygons.append(Polygon())
                continue

            counts["finite"] += 1
            polygons.append(cell)

        if debug:
            logger.debug(
                f"Bounded Voronoi: {len(self.points)} points, {counts['finite']} finite, "
                f"{counts['duplicate']} duplicate, {counts['empty']} empty, {counts['unbounded']} unbounded, "
                f"{counts['degenerate']} degenerate"
            )
        return polygons
