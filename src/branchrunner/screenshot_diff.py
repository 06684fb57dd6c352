"""Screenshot regression diffing against the last successful run of a branch.

Diffing is telemetry: every failure mode here degrades to "no diff" and is
logged, never raised into the pipeline.
"""

from __future__ import annotations

import hashlib
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from branchrunner.process import run_with_timeout, which
from branchrunner.schemas import DiffResult, RunRecord
from branchrunner.store import ConfigStore

logger = logging.getLogger(__name__)

UNKNOWN_PIXEL_COUNT = -1
_TOOL_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class ScreenshotComparison:
    has_diff: bool
    diff_percentage: float
    diff_pixel_count: int
    diff_image_path: str | None = None
    previous_screenshot_path: str | None = None
    error: str | None = None

    def to_diff_result(self) -> DiffResult:
        return DiffResult(
            diff_percentage=max(0.0, min(100.0, self.diff_percentage)),
            diff_pixel_count=self.diff_pixel_count,
            diff_image_path=self.diff_image_path,
            previous_screenshot_path=self.previous_screenshot_path,
        )


def _first_number(text: str) -> float | None:
    # ``compare -metric AE`` may print "1234" or "1234 (0.0188)" depending on version.
    for token in (text or "").replace("(", " ").split():
        try:
            return float(token)
        except ValueError:
            continue
    return None


async def compare_with_imagemagick(
    previous_path: str | Path,
    current_path: str | Path,
    diff_output_path: str | Path,
) -> ScreenshotComparison | None:
    """Pixel comparison via ImageMagick; ``None`` when the tool is unusable."""
    if which("compare") is None or which("identify") is None:
        return None

    command = shlex.join(
        ["compare", "-metric", "AE", str(previous_path), str(current_path), str(diff_output_path)]
    )
    result = await run_with_timeout(command, Path(diff_output_path).parent, _TOOL_TIMEOUT_MS)
    # compare exits 1 when images differ; only a missing metric means failure.
    pixels = _first_number(result.stderr) if result.stderr.strip() else _first_number(result.stdout)
    if pixels is None or result.timed_out:
        logger.debug("compare produced no metric: %s", result.output)
        return None

    identify = await run_with_timeout(
        shlex.join(["identify", "-format", "%w %h", str(previous_path)]),
        Path(diff_output_path).parent,
        _TOOL_TIMEOUT_MS,
    )
    try:
        width, height = (int(part) for part in identify.stdout.split()[:2])
    except ValueError:
        return None
    total = width * height
    if total <= 0:
        return None

    diff_pixels = int(pixels)
    diff_path = Path(diff_output_path)
    return ScreenshotComparison(
        has_diff=diff_pixels > 0,
        diff_percentage=min(100.0, diff_pixels / total * 100.0),
        diff_pixel_count=diff_pixels,
        diff_image_path=str(diff_path) if diff_path.is_file() else None,
        previous_screenshot_path=str(previous_path),
    )


def compare_by_hash(current_path: str | Path, previous_path: str | Path) -> ScreenshotComparison:
    """Content-hash comparison; the percentage is a file-size based estimate."""
    try:
        current = Path(current_path).read_bytes()
        previous = Path(previous_path).read_bytes()
    except OSError as exc:
        return ScreenshotComparison(False, 0.0, 0, error=f"Comparison failed: {exc}")

    has_diff = hashlib.sha256(current).hexdigest() != hashlib.sha256(previous).hexdigest()
    if not has_diff:
        return ScreenshotComparison(False, 0.0, 0, previous_screenshot_path=str(previous_path))

    avg_size = (len(current) + len(previous)) / 2 or 1
    estimate = min(abs(len(current) - len(previous)) / avg_size * 100.0 + 1.0, 100.0)
    return ScreenshotComparison(
        has_diff=True,
        diff_percentage=estimate,
        diff_pixel_count=UNKNOWN_PIXEL_COUNT,
        previous_screenshot_path=str(previous_path),
    )


async def compare_screenshots(
    current_path: str | Path,
    previous_path: str | Path,
    diff_output_path: str | Path,
) -> ScreenshotComparison:
    """Compare two screenshots, preferring ImageMagick over the hash fallback."""
    if not Path(current_path).is_file():
        return ScreenshotComparison(False, 0.0, 0, error="Current screenshot not found")
    if not Path(previous_path).is_file():
        return ScreenshotComparison(False, 0.0, 0, error="Previous screenshot not found")

    Path(diff_output_path).parent.mkdir(parents=True, exist_ok=True)
    pixel_result = await compare_with_imagemagick(previous_path, current_path, diff_output_path)
    if pixel_result is not None:
        return pixel_result

    logger.info("ImageMagick not available, using hash comparison")
    return compare_by_hash(current_path, previous_path)


async def diff(
    current_path: str | Path,
    previous_path: str | Path,
    output_path: str | Path,
) -> DiffResult | None:
    """Diff two screenshots; ``None`` whenever a comparison is not possible."""
    comparison = await compare_screenshots(current_path, previous_path, output_path)
    if comparison.error:
        logger.warning("Screenshot diff error: %s", comparison.error)
        return None
    return comparison.to_diff_result()


def find_baseline(
    store: ConfigStore,
    repo_full_name: str,
    branch: str,
    exclude_run_id: str,
) -> RunRecord | None:
    """Most recent successful run of the branch whose screenshot still exists."""
    previous = store.get_previous_successful_run(repo_full_name, branch, exclude_run_id)
    if previous is None or not previous.screenshot_path:
        return None
    if not Path(previous.screenshot_path).is_file():
        logger.warning("Previous screenshot file missing: %s", previous.screenshot_path)
        return None
    return previous


async def perform_screenshot_diff(
    store: ConfigStore,
    repo_full_name: str,
    branch: str,
    run_id: str,
    current_screenshot_path: str | Path,
    screenshots_dir: str | Path,
) -> DiffResult | None:
    """Diff the current run's screenshot against the branch baseline, if any."""
    baseline = find_baseline(store, repo_full_name, branch, run_id)
    if baseline is None:
        logger.info("No previous screenshot found for %s/%s", repo_full_name, branch)
        return None

    diff_image_path = Path(screenshots_dir) / f"{run_id}-diff.png"
    try:
        result = await diff(current_screenshot_path, baseline.screenshot_path or "", diff_image_path)
    except Exception:
        logger.exception("Screenshot diff failed for %s/%s", repo_full_name, branch)
        return None
    if result is not None:
        result.previous_screenshot_path = baseline.screenshot_path
        logger.info(
            "Screenshot diff: %.2f%% different (%s pixels)",
            result.diff_percentage,
            result.diff_pixel_count,
        )
    return result


async def generate_thumbnail(source_path: str | Path, thumbnail_path: str | Path, width: int = 200) -> bool:
    """Write a resized copy for history views; ``False`` on any failure."""
    if which("convert") is None or not Path(source_path).is_file():
        return False
    try:
        Path(thumbnail_path).parent.mkdir(parents=True, exist_ok=True)
        result = await run_with_timeout(
            shlex.join(
                ["convert", str(source_path), "-resize", f"{int(width)}x", "-quality", "80", str(thumbnail_path)]
            ),
            Path(thumbnail_path).parent,
            _TOOL_TIMEOUT_MS,
        )
    except OSError as exc:
        logger.debug("Thumbnail generation failed: %s", exc)
        return False
    return result.success
