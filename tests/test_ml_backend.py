import threading
import time

import numpy as np
import pytest

from mangavision.config import ProcessingOptions, RuntimeConfig
from mangavision.detector.ml import (
    MODEL_UNAVAILABLE_ADVISORY,
    NullBackend,
    YoloBackend,
    _load_with_timeout,
    create_backend,
    parse_predictions,
    resolve_class,
)
from mangavision.errors import ModelUnavailable
from mangavision.image_utils import PixelBuffer
from mangavision.models import DetectionClass, DetectionSource


def test_parse_yxyx_boxes():
    dets = parse_predictions(
        boxes=[[0.1, 0.2, 0.5, 0.6], [0.0, 0.0, 1.0, 1.0]],
        scores=[0.9, 0.8],
        classes=[0, 4],
        valid_count=2,
        image_width=1000,
        image_height=500,
    )
    assert len(dets) == 2
    d = dets[0]
    assert (d.x, d.y, d.width, d.height) == pytest.approx((200, 50, 400, 200))
    assert d.label == DetectionClass.SPEECH_BUBBLE
    assert d.source == DetectionSource.ML
    assert dets[1].label == DetectionClass.PANEL


def test_parse_respects_threshold_and_valid_count():
    boxes = [[0.1, 0.1, 0.2, 0.2]] * 4
    dets = parse_predictions(boxes, [0.9, 0.5, 0.95, 0.99], [1, 1, 2, 3], 3, 100, 100)
    assert [d.label for d in dets] == [DetectionClass.THOUGHT_BUBBLE, DetectionClass.NARRATION_BOX]


def test_parse_clips_and_drops_degenerate_boxes():
    dets = parse_predictions(
        [[-0.2, 0.5, 1.4, 0.9], [0.5, 0.5, 0.5, 0.7]],
        [0.9, 0.9],
        [3, 3],
        None,
        200,
        100,
    )
    assert len(dets) == 1
    assert (dets[0].y, dets[0].y2) == pytest.approx((0, 100))


def test_parse_xyxy_with_model_names():
    dets = parse_predictions(
        [[0.1, 0.2, 0.3, 0.4], [0.5, 0.5, 0.6, 0.6]],
        [0.9, 0.9],
        [0.0, 1.0],
        None,
        100,
        100,
        box_format="xyxy",
        names={0: "Text-Bubble", 1: "face"},
    )
    assert len(dets) == 1
    assert (dets[0].x, dets[0].y) == pytest.approx((10, 20))
    assert dets[0].label == DetectionClass.SPEECH_BUBBLE


def test_parse_rejects_unknown_format():
    with pytest.raises(ValueError):
        parse_predictions([], [], [], None, 10, 10, box_format="cxcywh")


@pytest.mark.parametrize(
    "class_id,names,expected",
    [
        (4, None, DetectionClass.PANEL),
        (9, None, None),
        (0, {0: "frame"}, DetectionClass.PANEL),
        (0, {0: "Speech Bubble"}, DetectionClass.SPEECH_BUBBLE),
        (0, {0: "onomatopoeia"}, DetectionClass.SFX_BUBBLE),
        (0, {0: "character"}, None),
    ],
)
def test_resolve_class(class_id, names, expected):
    assert resolve_class(class_id, names) == expected


def test_no_model_configured():
    backend, advisories = create_backend(RuntimeConfig())
    assert isinstance(backend, NullBackend)
    assert advisories == ()
    assert not backend.available
    assert backend.signature == "none"
    assert backend.try_detect(PixelBuffer.from_array(np.zeros((4, 4)))) is None


def test_missing_weights_fall_back_with_advisory(tmp_path):
    runtime = RuntimeConfig(model_path=str(tmp_path / "missing.pt"))
    backend, advisories = create_backend(runtime)
    assert isinstance(backend, NullBackend)
    assert advisories == (MODEL_UNAVAILABLE_ADVISORY,)


def test_load_missing_weights_raises(tmp_path):
    with pytest.raises(ModelUnavailable):
        YoloBackend(str(tmp_path / "missing.pt")).load()


class _Tensor:
    def __init__(self, values):
        self._values = np.asarray(values, dtype=np.float32)

    def cpu(self):
        return self

    def numpy(self):
        return self._values


class _Boxes:
    def __init__(self, xyxyn, conf, cls):
        self.xyxyn = _Tensor(xyxyn)
        self.conf = _Tensor(conf)
        self.cls = _Tensor(cls)

    def __len__(self):
        return len(self.conf.numpy())


class _Result:
    def __init__(self, boxes):
        self.boxes = boxes


class _Model:
    def __init__(self, boxes=None, error=None):
        self.boxes = boxes
        self.error = error
        self.kwargs = None

    def predict(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return [_Result(self.boxes)]


def test_yolo_backend_converts_results():
    backend = YoloBackend("weights.pt", options=ProcessingOptions(max_detections=7))
    backend.names = {0: "speech_bubble", 1: "panel"}
    backend.model = _Model(_Boxes([[0.25, 0.5, 0.75, 1.0]], [0.9], [1]))
    assert backend.available

    dets = backend.try_detect(PixelBuffer.from_array(np.zeros((200, 400), dtype=np.uint8)))
    assert len(dets) == 1
    assert dets[0].label == DetectionClass.PANEL
    assert (dets[0].x, dets[0].y, dets[0].width, dets[0].height) == pytest.approx((100, 100, 200, 100))
    assert backend.model.kwargs["max_det"] == 7
    assert backend.model.kwargs["verbose"] is False
    assert backend.model.kwargs["source"].shape == (200, 400, 3)


def test_yolo_backend_inference_error_returns_none():
    backend = YoloBackend("weights.pt")
    backend.model = _Model(error=RuntimeError("CUDA out of memory"))
    assert backend.try_detect(PixelBuffer.from_array(np.zeros((8, 8), dtype=np.uint8))) is None


def test_yolo_backend_close():
    backend = YoloBackend("weights.pt")
    backend.model = _Model(_Boxes(np.zeros((0, 4)), [], []))
    assert backend.try_detect(PixelBuffer.from_array(np.zeros((8, 8), dtype=np.uint8))) == []
    backend.close()
    assert not backend.available
    assert backend.try_detect(PixelBuffer.from_array(np.zeros((8, 8), dtype=np.uint8))) is None


class _SlowLoadBackend(YoloBackend):
    def __init__(self):
        super().__init__("weights.pt")
        self.release = threading.Event()
        self.loaded = threading.Event()

    def load(self):
        self.release.wait(5)
        self.model = _Model()
        self.loaded.set()
        return self


def test_load_timeout_releases_late_model():
    backend = _SlowLoadBackend()
    with pytest.raises(ModelUnavailable):
        _load_with_timeout(backend, 0.05)

    backend.release.set()
    assert backend.loaded.wait(5)
    deadline = time.monotonic() + 5
    while backend.model is not None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not backend.available
