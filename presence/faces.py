"""Face matching adapters.

The check-in flow only relies on `compare()` and `detect()`. Encodings come from
face_recognition (dlib); `CloudVisionDetector` can take over detection when the
Google Cloud Vision API is preferred for the auto-capture readiness check.
"""
import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Dict, List, Optional

import numpy as np
from PIL import Image

from presence.errors import FaceNotDetected

logger = logging.getLogger(__name__)

# Euclidean descriptor distance; lower is more similar
MATCH_DISTANCE_THRESHOLD = 0.6


@dataclass(frozen=True)
class MatchResult:
    is_match: bool
    score: float
    distance: float
    message: str = ''


def image_bytes(image_data: str) -> bytes:
    """Decode a base64 image, with or without a data-URL prefix."""
    if not image_data:
        raise FaceNotDetected('Image is required.')
    if ',' in image_data and image_data.lstrip().startswith('data:'):
        image_data = image_data.split(',', 1)[1]
    try:
        return base64.b64decode(image_data)
    except (binascii.Error, ValueError) as e:
        raise FaceNotDetected(f'Image could not be decoded: {e}') from e


def image_array(image_data: str) -> np.ndarray:
    try:
        image = Image.open(BytesIO(image_bytes(image_data)))
        if image.mode != 'RGB':
            image = image.convert('RGB')
        return np.array(image)
    except OSError as e:
        raise FaceNotDetected(f'Image could not be read: {e}') from e


def _face_recognition_encoder(image_np: np.ndarray) -> Optional[np.ndarray]:
    import face_recognition

    encodings = face_recognition.face_encodings(image_np)
    if not encodings:
        return None
    return encodings[0]


def _face_recognition_locator(image_np: np.ndarray) -> List:
    import face_recognition

    return face_recognition.face_locations(image_np)


def match_score(distance: float) -> float:
    return max(0.0, min(100.0, (1.0 - distance) * 100.0))


class FaceRecognitionMatcher:
    """Compares a registered photo against a captured frame."""

    def __init__(self, encoder: Callable[[np.ndarray], Optional[np.ndarray]] = _face_recognition_encoder,
                 locator: Callable[[np.ndarray], List] = _face_recognition_locator,
                 detector: Optional['CloudVisionDetector'] = None):
        self.encoder = encoder
        self.locator = locator
        self.detector = detector
        # registered photos rarely change; keep their encodings
        self._reference_cache = {}  # type: Dict[str, np.ndarray]

    def _encode_reference(self, image_data: str) -> Optional[np.ndarray]:
        key = hashlib.sha1(image_data.encode('utf-8')).hexdigest()
        if key not in self._reference_cache:
            encoding = self.encoder(image_array(image_data))
            if encoding is None:
                return None
            self._reference_cache[key] = np.asarray(encoding)
        return self._reference_cache[key]

    def compare(self, reference_image: str, candidate_image: str) -> MatchResult:
        reference = self._encode_reference(reference_image)
        if reference is None:
            raise FaceNotDetected('Could not detect face in registered photo.')

        candidate = self.encoder(image_array(candidate_image))
        if candidate is None:
            raise FaceNotDetected('Could not detect your face. Please try again with better lighting.')

        distance = float(np.linalg.norm(reference - np.asarray(candidate)))
        is_match = distance < MATCH_DISTANCE_THRESHOLD
        message = 'Face verification successful.' if is_match else f'Face does not match (Distance: {distance:.2f}).'
        return MatchResult(is_match=is_match, score=match_score(distance), distance=distance, message=message)

    def detect(self, image: str) -> bool:
        if self.detector is not None:
            return self.detector.detect(image)
        try:
            return len(self.locator(image_array(image))) > 0
        except FaceNotDetected:
            return False


class CloudVisionDetector:
    """Face detection through the Google Cloud Vision API."""

    def __init__(self, client=None):
        if client is None:
            from google.cloud import vision

            client = vision.ImageAnnotatorClient()
        self.client = client

    def detect_faces(self, content: bytes) -> List[Dict]:
        """Returns a list of face annotation dicts (bounding box and detection confidence)."""
        from google.cloud import vision

        response = self.client.face_detection(image=vision.Image(content=content))
        if response.error.message:
            raise RuntimeError(f"Vision API error: {response.error.message}")

        faces = []
        for face in response.face_annotations:
            faces.append({
                'bounding_poly': [(v.x, v.y) for v in face.bounding_poly.vertices],
                'detection_confidence': face.detection_confidence,
            })
        return faces

    def detect(self, image: str) -> bool:
        try:
            content = image_bytes(image)
        except FaceNotDetected:
            return False
        try:
            return len(self.detect_faces(content)) > 0
        except RuntimeError as e:
            logger.warning('Face detection failed: %s', e)
            return False
