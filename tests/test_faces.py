import base64
from io import BytesIO
from types import SimpleNamespace

import numpy as np
import pytest
from PIL import Image

from presence.errors import FaceNotDetected
from presence.faces import (MATCH_DISTANCE_THRESHOLD, CloudVisionDetector, FaceRecognitionMatcher, image_array,
                            match_score)


def photo(color, mode='RGB', data_url=False):
    buf = BytesIO()
    Image.new(mode, (8, 8), color).save(buf, format='PNG')
    encoded = base64.b64encode(buf.getvalue()).decode('ascii')
    return f'data:image/png;base64,{encoded}' if data_url else encoded


class ColorEncoder:
    """Uses the mean red channel as a one-dimensional face descriptor; black means no face."""

    def __init__(self):
        self.calls = 0

    def __call__(self, image_np):
        self.calls += 1
        red = float(image_np[:, :, 0].mean()) / 255.0
        if red == 0:
            return None
        return np.array([red])


def test_same_face_matches_with_full_score():
    matcher = FaceRecognitionMatcher(encoder=ColorEncoder())
    result = matcher.compare(photo((200, 0, 0)), photo((200, 0, 0), data_url=True))
    assert result.is_match
    assert result.distance == 0
    assert result.score == 100


def test_distant_face_does_not_match():
    matcher = FaceRecognitionMatcher(encoder=ColorEncoder())
    result = matcher.compare(photo((255, 0, 0)), photo((51, 0, 0)))
    assert result.distance == pytest.approx(0.8)
    assert result.distance >= MATCH_DISTANCE_THRESHOLD
    assert not result.is_match
    assert result.score == pytest.approx(20.0)


def test_missing_face_in_registered_photo():
    matcher = FaceRecognitionMatcher(encoder=ColorEncoder())
    with pytest.raises(FaceNotDetected, match='registered photo'):
        matcher.compare(photo((0, 0, 0)), photo((200, 0, 0)))


def test_missing_face_in_capture():
    matcher = FaceRecognitionMatcher(encoder=ColorEncoder())
    with pytest.raises(FaceNotDetected, match='your face'):
        matcher.compare(photo((200, 0, 0)), photo((0, 0, 0)))


def test_reference_encoding_is_cached():
    encoder = ColorEncoder()
    matcher = FaceRecognitionMatcher(encoder=encoder)
    reference = photo((200, 0, 0))
    matcher.compare(reference, photo((190, 0, 0)))
    matcher.compare(reference, photo((180, 0, 0)))
    assert encoder.calls == 3


def test_rgba_and_garbage_images():
    assert image_array(photo((10, 20, 30, 255), mode='RGBA')).shape == (8, 8, 3)
    with pytest.raises(FaceNotDetected):
        image_array('not an image at all!')
    with pytest.raises(FaceNotDetected):
        image_array(base64.b64encode(b'plain bytes').decode('ascii'))


def test_score_is_clamped():
    assert match_score(1.7) == 0
    assert match_score(-0.2) == 100


def test_detect_uses_locator():
    matcher = FaceRecognitionMatcher(encoder=ColorEncoder(), locator=lambda img: [(0, 8, 8, 0)])
    assert matcher.detect(photo((1, 2, 3))) is True
    matcher = FaceRecognitionMatcher(encoder=ColorEncoder(), locator=lambda img: [])
    assert matcher.detect(photo((1, 2, 3))) is False
    assert matcher.detect('') is False


class FakeVisionClient:
    def __init__(self, faces, error=''):
        self.faces = faces
        self.error = error
        self.images = []

    def face_detection(self, image):
        self.images.append(image)
        vertices = [SimpleNamespace(x=0, y=0), SimpleNamespace(x=4, y=4)]
        annotations = [SimpleNamespace(bounding_poly=SimpleNamespace(vertices=vertices), detection_confidence=0.9)
                       for _ in range(self.faces)]
        return SimpleNamespace(error=SimpleNamespace(message=self.error), face_annotations=annotations)


def test_cloud_vision_detector():
    detector = CloudVisionDetector(client=FakeVisionClient(faces=1))
    assert detector.detect_faces(b'jpeg')[0] == {'bounding_poly': [(0, 0), (4, 4)], 'detection_confidence': 0.9}

    matcher = FaceRecognitionMatcher(encoder=ColorEncoder(), detector=detector)
    assert matcher.detect(photo((1, 2, 3))) is True
    assert CloudVisionDetector(client=FakeVisionClient(faces=0)).detect(photo((1, 2, 3))) is False
    assert CloudVisionDetector(client=FakeVisionClient(faces=1, error='quota')).detect(photo((1, 2, 3))) is False
