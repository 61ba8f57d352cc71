"""Source format detection and job-type classification for uploaded assets."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional


class AssetCategory(str, Enum):
    SINGLE_MODEL = "single_model"
    LARGE_AREA = "large_area"


class SourceFormat(str, Enum):
    GLB = "glb"
    OBJ = "obj"
    FBX = "fbx"
    LAS = "las"
    LAZ = "laz"
    IFC = "ifc"
    ZIP = "zip"
    GEOJSON = "geojson"
    KML = "kml"
    IMAGE = "image"
    OTHER = "other"


class AssetType(str, Enum):
    """Type of the viewable output stored under ``final_key``."""

    GLB = "glb"
    B3DM = "b3dm"
    TILESET = "tileset"
    PNTS = "pnts"
    IMAGERY = "imagery"
    GEOJSON = "geojson"
    KML = "kml"
    OTHER = "other"


class JobType(str, Enum):
    NORMALIZE = "normalize"
    TILESET = "tileset"
    POINTCLOUD = "pointcloud"


POINT_CLOUD_FORMATS: FrozenSet[SourceFormat] = frozenset({SourceFormat.LAS, SourceFormat.LAZ})

# Formats a browser viewer renders as uploaded; no conversion job is needed.
DIRECTLY_VIEWABLE: Dict[SourceFormat, AssetType] = {
    SourceFormat.GLB: AssetType.GLB,
    SourceFormat.GEOJSON: AssetType.GEOJSON,
    SourceFormat.KML: AssetType.KML,
    SourceFormat.IMAGE: AssetType.IMAGERY,
}

_EXTENSION_FORMATS: Dict[str, SourceFormat] = {
    "glb": SourceFormat.GLB,
    "obj": SourceFormat.OBJ,
    "fbx": SourceFormat.FBX,
    "las": SourceFormat.LAS,
    "laz": SourceFormat.LAZ,
    "ifc": SourceFormat.IFC,
    "zip": SourceFormat.ZIP,
    "geojson": SourceFormat.GEOJSON,
    "json": SourceFormat.GEOJSON,
    "kml": SourceFormat.KML,
    "kmz": SourceFormat.KML,
    "png": SourceFormat.IMAGE,
    "jpg": SourceFormat.IMAGE,
    "jpeg": SourceFormat.IMAGE,
    "tif": SourceFormat.IMAGE,
    "tiff": SourceFormat.IMAGE,
    "webp": SourceFormat.IMAGE,
}

# Worker capability names accepted by the poll endpoint; None means any job type.
WORKER_JOB_TYPES: Dict[str, Optional[FrozenSet[JobType]]] = {
    "blender": frozenset({JobType.NORMALIZE}),
    "entwine": frozenset({JobType.POINTCLOUD}),
    "3d-tiles": frozenset({JobType.TILESET}),
    "job-dispatcher": None,
}


def detect_source_format(file_name: str, mime_type: str) -> SourceFormat:
    """Detect the source format from the file extension, falling back to the MIME type."""
    lower = (file_name or "").strip().lower()
    extension = lower.rsplit(".", 1)[-1] if "." in lower else ""
    if extension in _EXTENSION_FORMATS:
        return _EXTENSION_FORMATS[extension]

    mime = (mime_type or "").strip().lower()
    if "gltf" in mime:
        return SourceFormat.GLB
    if "geo+json" in mime:
        return SourceFormat.GEOJSON
    if "kml" in mime:
        return SourceFormat.KML
    if mime.startswith("image/"):
        return SourceFormat.IMAGE
    return SourceFormat.OTHER


def coerce_source_format(value: Optional[str]) -> SourceFormat:
    """Map a stored source format string onto the enum, unknown values to OTHER."""
    try:
        return SourceFormat(str(value or "").strip().lower())
    except ValueError:
        return SourceFormat.OTHER


def viewable_asset_type(source_format: SourceFormat) -> Optional[AssetType]:
    """Return the output asset type when the format needs no conversion, else None."""
    return DIRECTLY_VIEWABLE.get(source_format)


def classify(category: AssetCategory, source_format: SourceFormat) -> JobType:
    """Map (asset category, source format) to the conversion job type.

    single_model -> normalize for every format; large_area -> pointcloud for
    LAS/LAZ and tileset for everything else. Total over both enums.
    """
    category = AssetCategory(category)
    source_format = SourceFormat(source_format)
    if category is AssetCategory.SINGLE_MODEL:
        return JobType.NORMALIZE
    if source_format in POINT_CLOUD_FORMATS:
        return JobType.POINTCLOUD
    return JobType.TILESET


def job_types_for_worker(worker_type: Optional[str]) -> Optional[FrozenSet[JobType]]:
    """Resolve a worker capability name to the job types it may claim.

    Raises KeyError for unknown worker types; ``None``/empty means unrestricted.
    """
    name = (worker_type or "").strip().lower()
    if not name:
        return None
    return WORKER_JOB_TYPES[name]
