"""
Merge helpers for unstructured (JSON-like) resources.
"""
from typing import Any, Dict


def recursive_merge(src: Any, dst: Any) -> Any:
    """Merge src into dst and return the result.

    Dicts merge key by key, recursively; keys only present in dst are kept.
    Lists merge position by position and take the length of src. Anything
    else, including a type mismatch, resolves to src.
    """
    if isinstance(src, dict):
        if not isinstance(dst, dict):
            return src
        for key, src_value in src.items():
            if key in dst:
                dst[key] = recursive_merge(src_value, dst[key])
            else:
                dst[key] = src_value
        return dst
    if isinstance(src, list):
        if not isinstance(dst, list):
            return src
        return [
            recursive_merge(value, dst[i]) if i < len(dst) else value
            for i, value in enumerate(src)
        ]
    return src


def create_merge_patch(original: Dict[str, Any], modified: Dict[str, Any]) -> Dict[str, Any]:
    """Compute an RFC 7386 JSON merge patch that turns original into modified."""
    patch: Dict[str, Any] = {}
    for key in original:
        if key not in modified:
            patch[key] = None
    for key, value in modified.items():
        if key not in original:
            patch[key] = value
            continue
        old = original[key]
        if isinstance(old, dict) and isinstance(value, dict):
            nested = create_merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif old != value:
            patch[key] = value
    return patch
