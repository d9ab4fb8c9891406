import numpy as np
import pytest
from PIL import Image

from mangavision import (
    DetectionClass,
    DetectionSource,
    InvalidInput,
    MangaVisionError,
    MangaVisionPipeline,
    PixelBuffer,
    ProcessingOptions,
    ResultCache,
    RuntimeConfig,
)
from mangavision.detector.ml import MODEL_UNAVAILABLE_ADVISORY
from mangavision.models import Detection
from mangavision.pipeline import is_degenerate
from mangavision.preprocess.thresholding import is_binary

FAST = ProcessingOptions(enable_denoising=False, enable_contrast_enhancement=False)


def assert_ellipse_box(det, tolerance=10):
    assert abs(det.x - 300) <= tolerance
    assert abs(det.y - 525) <= tolerance
    assert abs(det.x2 - 500) <= tolerance
    assert abs(det.y2 - 675) <= tolerance


def test_single_ellipse(ellipse_page):
    with MangaVisionPipeline() as pipeline:
        result = pipeline.detect(ellipse_page)
    assert len(result) == 1
    det = result[0]
    assert det.label in (DetectionClass.SPEECH_BUBBLE, DetectionClass.THOUGHT_BUBBLE)
    assert det.confidence > 0.6
    assert det.id == "det_0"
    assert det.panel_id is None
    assert_ellipse_box(det)
    assert (result.image_width, result.image_height) == (800, 1200)
    assert result.layout is None
    assert result.advisories == ()


def test_detection_is_mapped_back_to_input_size(ellipse_page):
    pipeline = MangaVisionPipeline(ProcessingOptions(max_dimension=600))
    result = pipeline.detect(ellipse_page)
    assert len(result) == 1
    assert_ellipse_box(result[0])


def test_accepts_all_input_types(ellipse_page):
    pipeline = MangaVisionPipeline()
    rgba = PixelBuffer.from_array(ellipse_page)
    sources = [
        ellipse_page,
        rgba,
        rgba.to_image(),
        Image.fromarray(ellipse_page),
        {"width": 800, "height": 1200, "data": rgba.data},
    ]
    for source in sources:
        assert len(pipeline.detect(source)) == 1


def test_uniform_page_is_empty(white_page):
    pipeline = MangaVisionPipeline()
    result = pipeline.detect(white_page)
    assert len(result) == 0
    assert (result.image_width, result.image_height) == (500, 500)
    assert pipeline.get_stats()["degenerate_frames"] == 1


def test_transparent_page_is_empty(ellipse_page):
    rgba = PixelBuffer.from_array(ellipse_page).rgba.copy()
    rgba[..., 3] = 0
    buffer = PixelBuffer.from_array(rgba)
    assert is_degenerate(buffer)
    assert len(MangaVisionPipeline().detect(buffer)) == 0


def test_invalid_input():
    pipeline = MangaVisionPipeline()
    with pytest.raises(InvalidInput):
        pipeline.detect({"width": 2, "height": 2, "data": bytes(3)})
    with pytest.raises(InvalidInput):
        pipeline.detect(None)


def test_results_are_cached(ellipse_page):
    pipeline = MangaVisionPipeline()
    first = pipeline.detect(ellipse_page)
    second = pipeline.detect(ellipse_page.copy())
    assert second is first
    stats = pipeline.get_stats()
    assert stats["detections_run"] == 1
    assert stats["detect_cache_hits"] == 1
    assert stats["cache"]["items"] == 1


def test_cache_shared_between_option_sets(ellipse_page):
    cache = ResultCache()
    MangaVisionPipeline(cache=cache).detect(ellipse_page)
    other = MangaVisionPipeline(ProcessingOptions(reading_direction="rtl"), cache=cache)
    other.detect(ellipse_page)
    assert len(cache) == 2
    assert other.get_stats()["detect_cache_hits"] == 0


def test_ml_detections_win_over_duplicates(ellipse_page, fake_backend):
    ml = Detection(301, 526, 198, 148, 0.95, DetectionClass.SPEECH_BUBBLE, DetectionSource.ML)
    backend = fake_backend([ml])
    pipeline = MangaVisionPipeline(backend=backend)
    result = pipeline.detect(ellipse_page)
    assert backend.calls == 1
    assert len(result) == 1
    assert result[0].source == DetectionSource.ML
    assert result[0].confidence == 0.95
    assert pipeline.get_stats()["model_available"]


def test_low_confidence_ml_detections_are_dropped(ellipse_page, fake_backend):
    weak = Detection(10, 10, 50, 50, 0.7, DetectionClass.SFX_BUBBLE, DetectionSource.ML)
    result = MangaVisionPipeline(backend=fake_backend([weak])).detect(ellipse_page)
    assert all(d.source == DetectionSource.HEURISTIC for d in result)


def test_missing_model_is_reported(ellipse_page, tmp_path):
    runtime = RuntimeConfig(model_path=str(tmp_path / "bubbles.pt"))
    pipeline = MangaVisionPipeline(runtime=runtime)
    result = pipeline.detect(ellipse_page)
    assert len(result) == 1
    assert result.advisories == (MODEL_UNAVAILABLE_ADVISORY,)
    assert not pipeline.get_stats()["model_available"]


def test_panels_layout_and_association(panel_page):
    pipeline = MangaVisionPipeline(ProcessingOptions(reading_direction="rtl"))
    result = pipeline.detect(panel_page)
    panels = result.panels
    assert len(panels) == 2
    assert result.layout.layout_type == "grid"
    upper = min(panels, key=lambda p: p.y)
    assert result.layout.reading_order[0] == upper.id

    bubbles = result.bubbles
    assert len(bubbles) == 1
    assert bubbles[0].panel_id == upper.id
    # Bubbles come before panels
    assert result[0] is bubbles[0]


def test_panel_detection_disabled(panel_page):
    pipeline = MangaVisionPipeline(ProcessingOptions(enable_panel_detection=False))
    result = pipeline.detect(panel_page)
    assert result.panels == []
    assert result.layout is None


def test_prepare_for_ocr(ellipse_page):
    pipeline = MangaVisionPipeline(FAST)
    ocr = pipeline.prepare_for_ocr(ellipse_page)
    assert (ocr.width, ocr.height) == (800, 1200)
    assert is_binary(ocr.gray())
    assert pipeline.prepare_for_ocr(ellipse_page) is ocr
    assert pipeline.get_stats()["ocr_cache_hits"] == 1


def test_analyze(lined_page):
    pipeline = MangaVisionPipeline(FAST)
    analysis = pipeline.analyze(lined_page)
    assert analysis.skew_angle == 0.0
    assert analysis.ocr_buffer.width == 600
    assert analysis.detections.image_width == 600


def test_extract_region(ellipse_page):
    pipeline = MangaVisionPipeline()
    det = pipeline.detect(ellipse_page)[0]
    region = pipeline.extract_region(ellipse_page, det, padding=5)
    assert region.width == pytest.approx(det.width + 10, abs=2)
    assert region.height == pytest.approx(det.height + 10, abs=2)
    # Centre of the ellipse is solid ink
    assert region.gray()[region.height // 2, region.width // 2] == 0


def test_extract_region_outside_page(ellipse_page):
    far = Detection(5000, 5000, 10, 10, 0.9, DetectionClass.PANEL, DetectionSource.ML)
    with pytest.raises(InvalidInput):
        MangaVisionPipeline().extract_region(ellipse_page, far)


def test_process_batch(ellipse_page, white_page):
    pipeline = MangaVisionPipeline()
    results = pipeline.process_batch([ellipse_page, "not an image", white_page])
    assert len(results[0]) == 1
    assert results[1] is None
    assert len(results[2]) == 0
    assert pipeline.get_stats()["batch_failures"] == 1


def test_closed_pipeline(ellipse_page, fake_backend):
    backend = fake_backend()
    pipeline = MangaVisionPipeline(backend=backend)
    pipeline.close()
    assert backend.closed
    with pytest.raises(MangaVisionError):
        pipeline.detect(ellipse_page)


def test_detection_is_deterministic(ellipse_page):
    a = MangaVisionPipeline().detect(ellipse_page)
    b = MangaVisionPipeline().detect(ellipse_page)
    assert a.to_dict() == b.to_dict()
