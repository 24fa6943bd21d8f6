#!/usr/bin/env python3
"""
Build the precinct spatial index

What this does (in plain English):
- Makes sure GDAL's ogr2ogr is on the PATH (we shell out to it twice).
- Downloads the national precincts-with-results TopoJSON (.gz) and gunzips it
  on the fly into build/. If it's already there, we skip the download.
- Converts TopoJSON -> GeoJSON via a Web Mercator round trip so we can simplify
  with a tolerance in meters, then rounds coordinates to 5 decimals.
- Gives every feature a bbox, bulk-loads the boxes into an R-tree and writes the
  features back out in the tree's order. Nearby precincts end up next to each
  other in the file, which is the whole point for downstream tile/viewport reads.

Notes & guardrails:
- The topology file is big (every precinct in the country). The download is
  streamed chunk by chunk through the decompressor; we never hold it in memory.
- A half-written download is deleted, so a re-run won't mistake it for a
  finished one.
- Every failure is fatal for the run. main() prints one [ERROR] line naming the
  step and exits 1; no retries.

Usage:
  python -m scripts.build_spatial_index [--build-dir build] [--url https://...]
  build-spatial-index               (after pip install -e .)
"""
from __future__ import annotations

import argparse
import json
import subprocess
import sys
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Protocol, Sequence

import requests
import shapely
from shapely.geometry import shape

from scripts.stages import StageError, report_failure, stage

# ------------ Config ------------
ROOT = Path(__file__).resolve().parents[1]

TOPO_URL = (
    "https://int.nyt.com/newsgraphics/elections/map-data/2024/national/"
    "precincts-with-results.topojson.gz"
)

GDAL_HINT = (
    "Install GDAL so ogr2ogr is on your PATH. On macOS: brew install gdal; "
    "with conda: conda install -c conda-forge gdal"
)

CHUNK_SIZE = 1 << 16
GZIP_WBITS = 16 + zlib.MAX_WBITS  # gzip header + trailer, not raw zlib


@dataclass(frozen=True)
class BuildConfig:
    """
    Everything the build needs to know about where things live.

    The file names are fixed; only the directory and the source URL move around
    (tests point build_dir at a tmp dir).
    """
    build_dir: Path = field(default_factory=lambda: ROOT / "build")
    topo_url: str = TOPO_URL
    source_srs: str = "EPSG:4326"
    projected_srs: str = "EPSG:3857"
    simplify_tolerance: float = 100       # projected units (meters in 3857)
    coordinate_precision: int = 5
    node_capacity: int = 9                # max entries per R-tree node

    @property
    def topo_path(self) -> Path:
        return self.build_dir / "precincts-with-results.topojson"

    @property
    def mercator_path(self) -> Path:
        return self.build_dir / "temp-mercator.geojson"

    @property
    def geojson_path(self) -> Path:
        return self.build_dir / "precincts-with-results.geojson"

    @property
    def spatial_index_path(self) -> Path:
        return self.build_dir / "precincts-with-results-spatial-index.json"


# ------------ ogr2ogr ------------
class Converter(Protocol):
    def check(self) -> None: ...

    def reproject(
        self,
        src: Path,
        dst: Path,
        source_srs: str,
        target_srs: str,
        simplify: Optional[float] = None,
        precision: Optional[int] = None,
    ) -> None: ...


Runner = Callable[..., subprocess.CompletedProcess]


class Ogr2OgrConverter:
    """
    Thin wrapper over the ogr2ogr binary.

    `runner` is subprocess.run unless a test swaps it out. We pass argument
    lists (no shell) and leave stdout/stderr alone so GDAL's progress shows up.
    """

    def __init__(self, binary: str = "ogr2ogr", runner: Runner = subprocess.run) -> None:
        self.binary = binary
        self.runner = runner

    def check(self) -> None:
        try:
            result = self.runner([self.binary, "--version"], capture_output=True, text=True)
        except OSError as e:
            raise StageError("preflight", f"GDAL ({self.binary}) is not installed: {e}", GDAL_HINT) from e
        if result.returncode != 0:
            raise StageError(
                "preflight",
                f"GDAL ({self.binary}) is not installed (exit {result.returncode})",
                GDAL_HINT,
            )

    def reproject(self, src, dst, source_srs, target_srs, simplify=None, precision=None):
        cmd = [
            self.binary, "-f", "GeoJSON", str(dst), str(src),
            "-s_srs", source_srs, "-t_srs", target_srs,
        ]
        if simplify is not None:
            cmd += ["-simplify", f"{simplify:g}"]
        if precision is not None:
            cmd += ["-lco", f"COORDINATE_PRECISION={precision}"]
        self.runner(cmd, check=True)


# ------------ R-tree ------------
class SpatialIndex(Protocol):
    def bulk_load(self, features: Sequence[dict]) -> List[dict]: ...


def _box_of(bbox: Sequence[float]) -> tuple[float, float, float, float]:
    """2D extent of a GeoJSON bbox (4 values, or 6 for 3D)."""
    if len(bbox) == 6:
        return bbox[0], bbox[1], bbox[3], bbox[4]
    if len(bbox) == 4:
        return bbox[0], bbox[1], bbox[2], bbox[3]
    raise ValueError(f"bbox must have 4 or 6 values, got {len(bbox)}")


class STRtreeIndex:
    """
    Bulk-load features into shapely's STRtree and read them back in tree order.

    GEOS does the sort-tile-recursive packing. Querying with the collection's
    total extent walks every leaf, and the hits come back in the order the
    tree stores them, i.e. spatially clustered.
    """

    def __init__(self, node_capacity: int = 9) -> None:
        self.node_capacity = node_capacity

    def bulk_load(self, features):
        if not features:
            return []
        boxes = [shapely.box(*_box_of(f["bbox"])) for f in features]
        tree = shapely.STRtree(boxes, node_capacity=self.node_capacity)
        extent = shapely.box(*shapely.total_bounds(boxes))
        order = tree.query(extent)
        return [features[i] for i in order]


# ------------ Steps ------------
def check_gdal(converter: Converter) -> None:
    """
    One-shot check that the conversion tool runs at all. Must pass before we
    touch the network.
    """
    with stage("preflight"):
        converter.check()
    print("[OK] GDAL is installed.")


def ensure_build_dir(cfg: BuildConfig) -> None:
    with stage("workspace"):
        if not cfg.build_dir.exists():
            cfg.build_dir.mkdir(parents=True, exist_ok=True)
            print(f"[INFO] Created build directory: {cfg.build_dir}")


def gunzip_chunks(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """
    Decompress a gzip byte stream as it arrives.

    Handles concatenated gzip members. Raises EOFError if nothing arrived or
    the stream stops before a member's trailer (truncated download).
    """
    d = zlib.decompressobj(GZIP_WBITS)
    seen = False
    for chunk in chunks:
        while chunk:
            seen = True
            if d.eof:
                d = zlib.decompressobj(GZIP_WBITS)
            out = d.decompress(chunk)
            if out:
                yield out
            chunk = d.unused_data if d.eof else b""
    if not seen:
        raise EOFError("response body was empty")
    tail = d.flush()
    if tail:
        yield tail
    if not d.eof:
        raise EOFError("gzip stream ended early (truncated download?)")


def download_and_extract(cfg: BuildConfig, session: Optional[requests.Session] = None) -> bool:
    """
    Fetch cfg.topo_url and gunzip it into cfg.topo_path.

    Returns:
        bool: True if we downloaded, False if the file was already there.
    """
    with stage("download"):
        dest = cfg.topo_path
        if dest.exists():
            print("[SKIP] TopoJSON already downloaded and extracted.")
            return False

        http = session or requests
        part = dest.with_name(dest.name + ".part")
        print(f"[INFO] Downloading: {cfg.topo_url}")
        try:
            with http.get(cfg.topo_url, stream=True) as r:
                if not r.ok:
                    raise RuntimeError(f"Failed to download file: {r.status_code} {r.reason}")
                with part.open("wb") as f:
                    for piece in gunzip_chunks(r.iter_content(chunk_size=CHUNK_SIZE)):
                        f.write(piece)
            part.replace(dest)
        finally:
            part.unlink(missing_ok=True)

    print(f"[OK] Downloaded and extracted to: {dest}")
    return True


def convert_topo_to_geojson(cfg: BuildConfig, converter: Converter) -> None:
    """
    TopoJSON (4326) -> GeoJSON (3857) -> simplified GeoJSON (4326).

    Simplifying in Mercator means the tolerance is meters, not degrees, so
    precincts at different latitudes get simplified about the same.
    """
    with stage("convert"):
        print("[INFO] Converting TopoJSON to GeoJSON (Mercator) - this could take awhile...")
        converter.reproject(cfg.topo_path, cfg.mercator_path, cfg.source_srs, cfg.projected_srs)

        print(f"[INFO] Reprojecting to {cfg.source_srs} and simplifying...")
        converter.reproject(
            cfg.mercator_path,
            cfg.geojson_path,
            cfg.projected_srs,
            cfg.source_srs,
            simplify=cfg.simplify_tolerance,
            precision=cfg.coordinate_precision,
        )
    print(f"[OK] Final GeoJSON saved to: {cfg.geojson_path}")


def compute_bbox(feature: dict) -> Optional[List[float]]:
    """
    [min_lon, min_lat, max_lon, max_lat] of a feature's geometry, or None when
    there's nothing to bound (null or empty geometry is legal GeoJSON).
    """
    geom = feature.get("geometry")
    if not geom:
        return None
    g = shape(geom)
    if g.is_empty:
        return None
    return list(g.bounds)


def fill_missing_bboxes(features: Iterable[dict]) -> int:
    """
    Attach a bbox to every feature that doesn't have one. Existing bboxes are
    left exactly as they came in; features with no geometry stay bbox-less.

    Returns:
        int: how many bboxes we had to compute.
    """
    filled = 0
    for feat in features:
        if feat.get("bbox") is None:
            bbox = compute_bbox(feat)
            if bbox is not None:
                feat["bbox"] = bbox
                filled += 1
    return filled


def build_spatial_index(in_path: Path, out_path: Path, index: SpatialIndex) -> int:
    """
    Read a FeatureCollection, bbox it, reorder it through the R-tree, write it.

    Features without geometry can't go in the tree; they're kept and written
    after the tree-ordered ones, in input order.

    Returns:
        int: number of features written.
    """
    with stage("index"):
        print(f"[INFO] Reading {in_path}...")
        with in_path.open(encoding="utf-8") as f:
            geojson = json.load(f)

        if not isinstance(geojson, dict) or geojson.get("type") != "FeatureCollection":
            raise ValueError(f"{in_path} is not a GeoJSON FeatureCollection")

        features = geojson.get("features") or []
        filled = fill_missing_bboxes(features)
        print(f"[INFO] Computed {filled} missing bbox(es)")

        bounded = [f for f in features if f.get("bbox") is not None]
        unbounded = [f for f in features if f.get("bbox") is None]
        if unbounded:
            print(f"[WARN] {len(unbounded)} feature(s) have no geometry; appending them unindexed")

        print(f"[INFO] Indexing {len(bounded)} features...")
        ordered = index.bulk_load(bounded) + unbounded

        with out_path.open("w", encoding="utf-8") as f:
            json.dump(
                {"type": "FeatureCollection", "features": ordered},
                f,
                separators=(",", ":"),
                ensure_ascii=False,
            )
    print(f"[OK] Wrote spatial index -> {out_path}")
    return len(ordered)


def run(
    cfg: BuildConfig,
    converter: Optional[Converter] = None,
    index: Optional[SpatialIndex] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """
    The whole build, in order. Raises StageError on the first step that fails.
    """
    converter = converter or Ogr2OgrConverter()
    index = index or STRtreeIndex(cfg.node_capacity)

    check_gdal(converter)
    ensure_build_dir(cfg)
    download_and_extract(cfg, session)
    convert_topo_to_geojson(cfg, converter)
    build_spatial_index(cfg.geojson_path, cfg.spatial_index_path, index)
    return cfg.spatial_index_path


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entrypoint. Everything has a default, so no arguments are needed.
    """
    ap = argparse.ArgumentParser(description="Download precincts and build the spatial index.")
    ap.add_argument("--build-dir", type=Path, default=ROOT / "build", help="Output directory (default: build/)")
    ap.add_argument("--url", default=TOPO_URL, help="Gzipped TopoJSON source URL")
    args = ap.parse_args(argv)

    cfg = BuildConfig(build_dir=args.build_dir, topo_url=args.url)
    try:
        out = run(cfg)
    except StageError as e:
        return report_failure(e)
    print(f"[DONE] {out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
