import pytest

from services.classifier import (
    AssetCategory,
    AssetType,
    JobType,
    SourceFormat,
    classify,
    coerce_source_format,
    detect_source_format,
    job_types_for_worker,
    viewable_asset_type,
)


@pytest.mark.parametrize("category", list(AssetCategory))
@pytest.mark.parametrize("source_format", list(SourceFormat))
def test_classify_is_total_and_deterministic(category, source_format):
    first = classify(category, source_format)
    second = classify(category, source_format)
    assert first in set(JobType)
    assert first == second


def test_classify_rule_table():
    assert classify(AssetCategory.SINGLE_MODEL, SourceFormat.LAS) == JobType.NORMALIZE
    assert classify(AssetCategory.SINGLE_MODEL, SourceFormat.FBX) == JobType.NORMALIZE
    assert classify(AssetCategory.LARGE_AREA, SourceFormat.LAS) == JobType.POINTCLOUD
    assert classify(AssetCategory.LARGE_AREA, SourceFormat.LAZ) == JobType.POINTCLOUD
    assert classify(AssetCategory.LARGE_AREA, SourceFormat.OBJ) == JobType.TILESET
    assert classify(AssetCategory.LARGE_AREA, SourceFormat.OTHER) == JobType.TILESET


def test_classify_accepts_string_values():
    assert classify("large_area", "laz") == JobType.POINTCLOUD


@pytest.mark.parametrize(
    "file_name,mime_type,expected",
    [
        ("Building.GLB", "", SourceFormat.GLB),
        ("scan.laz", "application/octet-stream", SourceFormat.LAZ),
        ("parcels.json", "application/json", SourceFormat.GEOJSON),
        ("route.kmz", "", SourceFormat.KML),
        ("ortho.tiff", "", SourceFormat.IMAGE),
        ("archive.zip", "application/zip", SourceFormat.ZIP),
        ("noextension", "model/gltf-binary", SourceFormat.GLB),
        ("noextension", "application/geo+json", SourceFormat.GEOJSON),
        ("photo", "image/png", SourceFormat.IMAGE),
        ("mystery.xyz", "application/octet-stream", SourceFormat.OTHER),
    ],
)
def test_detect_source_format(file_name, mime_type, expected):
    assert detect_source_format(file_name, mime_type) == expected


def test_viewable_formats_skip_processing():
    assert viewable_asset_type(SourceFormat.GLB) == AssetType.GLB
    assert viewable_asset_type(SourceFormat.GEOJSON) == AssetType.GEOJSON
    assert viewable_asset_type(SourceFormat.KML) == AssetType.KML
    assert viewable_asset_type(SourceFormat.IMAGE) == AssetType.IMAGERY
    assert viewable_asset_type(SourceFormat.LAS) is None
    assert viewable_asset_type(SourceFormat.OBJ) is None


def test_coerce_source_format_maps_unknown_to_other():
    assert coerce_source_format("LAS") == SourceFormat.LAS
    assert coerce_source_format("dwg") == SourceFormat.OTHER
    assert coerce_source_format(None) == SourceFormat.OTHER


def test_worker_types_resolve_to_job_filters():
    assert job_types_for_worker("blender") == frozenset({JobType.NORMALIZE})
    assert job_types_for_worker("entwine") == frozenset({JobType.POINTCLOUD})
    assert job_types_for_worker("3d-tiles") == frozenset({JobType.TILESET})
    assert job_types_for_worker("job-dispatcher") is None
    assert job_types_for_worker(None) is None
    with pytest.raises(KeyError):
        job_types_for_worker("potree")
