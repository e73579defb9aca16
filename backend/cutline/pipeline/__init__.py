# Scene segmentation pipeline
from cutline.pipeline.scene_segmentation import (
    is_well_ordered,
    merge_short_scenes,
    scenes_from_cuts,
    select_scenes,
)

__all__ = [
    "is_well_ordered",
    "merge_short_scenes",
    "scenes_from_cuts",
    "select_scenes",
]
