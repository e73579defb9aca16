"""Scene-cut based segmentation.

Turns the cut timestamps reported by the scene detector into an ordered,
non-overlapping list of scenes, and picks the scenes a scene-clip job
extracts.
"""
from typing import Iterable, List, Optional

from cutline.models.scene import Scene

# Scenes shorter than this are detector noise
MIN_SCENE_SLIVER = 0.1


def scenes_from_cuts(
    cut_timestamps: Iterable[float],
    video_duration: float
) -> List[Scene]:
    """
    Create contiguous scenes from scene-change timestamps.

    With no cuts the whole video is a single scene. A zero-length video
    has no scenes.

    Args:
        cut_timestamps: Timestamps where scenes change
        video_duration: Total video duration

    Returns:
        Scenes covering [0, video_duration], sorted by start
    """
    if video_duration <= 0:
        return []

    # Only cuts strictly inside the video split it
    timestamps = sorted({t for t in cut_timestamps if 0 < t < video_duration})
    boundaries = [0.0] + timestamps + [video_duration]

    scenes = []
    start = boundaries[0]
    for end in boundaries[1:]:
        # A sliver is absorbed by the scene that follows it
        if end - start > MIN_SCENE_SLIVER:
            scenes.append(Scene(start, end))
            start = end

    if start < video_duration:
        # Trailing sliver joins the last scene
        if scenes:
            scenes[-1] = Scene(scenes[-1].start, video_duration)
        else:
            scenes.append(Scene(0.0, video_duration))

    return scenes


def merge_short_scenes(
    scenes: List[Scene],
    min_duration: float
) -> List[Scene]:
    """
    Merge scenes shorter than min_duration with a neighbour.

    Strategy:
    - First scene merges forward, last scene merges backward
    - A middle scene merges into whichever neighbour gives the shorter result

    Args:
        scenes: Sorted, contiguous scenes
        min_duration: Minimum scene duration

    Returns:
        List of merged scenes
    """
    if len(scenes) <= 1:
        return list(scenes)

    result = list(scenes)

    # Keep merging until no short scenes remain
    changed = True
    while changed and len(result) > 1:
        changed = False
        for i, current in enumerate(result):
            if current.duration >= min_duration:
                continue

            if i == 0:
                merged, drop = Scene(current.start, result[1].end), (0, 2)
            elif i == len(result) - 1:
                merged, drop = Scene(result[i - 1].start, current.end), (i - 1, i + 1)
            else:
                prev_combined = current.end - result[i - 1].start
                next_combined = result[i + 1].end - current.start
                if prev_combined <= next_combined:
                    merged, drop = Scene(result[i - 1].start, current.end), (i - 1, i + 1)
                else:
                    merged, drop = Scene(current.start, result[i + 1].end), (i, i + 2)

            result[drop[0]:drop[1]] = [merged]
            changed = True
            break

    return result


def select_scenes(
    scenes: List[Scene],
    min_duration: float,
    max_scenes: Optional[int] = None
) -> List[Scene]:
    """
    Choose which scenes a scene-clip job extracts.

    Short scenes are merged into neighbours first. When max_scenes is set
    the longest scenes win; the selection is returned in chronological
    order.

    Args:
        scenes: Detected scenes
        min_duration: Minimum clip duration
        max_scenes: Optional cap on the number of clips

    Returns:
        Selected scenes sorted by start time
    """
    selected = merge_short_scenes(scenes, min_duration)

    if max_scenes is not None and len(selected) > max_scenes:
        longest = sorted(selected, key=lambda s: (-s.duration, s.start))[:max_scenes]
        selected = sorted(longest, key=lambda s: s.start)

    return selected


def is_well_ordered(scenes: List[Scene]) -> bool:
    """True when scenes are sorted by start and pairwise non-overlapping."""
    return all(a.end <= b.start for a, b in zip(scenes, scenes[1:]))
