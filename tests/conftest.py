from types import SimpleNamespace

import pytest

from gazedwell.normalizer import NEUTRAL_NOSE_DROP

EYE_Y = 0.40
IOD = 0.14
LANDMARK_COUNT = 478


def make_face(nose_dx=0.0, nose_dy=0.0, closed=False, mouth_gap=None):
    """Frontal face mesh in normalised image coordinates.

    Eye centres sit at x=0.43 and x=0.57 so the inter-eye distance is 0.14;
    the nose tip rests NEUTRAL_NOSE_DROP inter-eye distances below the eye line.
    """
    pts = [SimpleNamespace(x=0.5, y=0.5) for _ in range(LANDMARK_COUNT)]

    def put(i, x, y):
        pts[i] = SimpleNamespace(x=x, y=y)

    put(33, 0.40, EYE_Y)
    put(133, 0.46, EYE_Y)
    put(362, 0.54, EYE_Y)
    put(263, 0.60, EYE_Y)

    lid = 0.002 if closed else 0.01
    put(160, 0.42, EYE_Y - lid)
    put(144, 0.42, EYE_Y + lid)
    put(158, 0.44, EYE_Y - lid)
    put(153, 0.44, EYE_Y + lid)
    put(385, 0.56, EYE_Y - lid)
    put(380, 0.56, EYE_Y + lid)
    put(387, 0.58, EYE_Y - lid)
    put(373, 0.58, EYE_Y + lid)

    put(468, 0.43, EYE_Y)
    put(473, 0.57, EYE_Y)

    put(1, 0.5 + nose_dx, EYE_Y + NEUTRAL_NOSE_DROP * IOD + nose_dy)

    if mouth_gap is not None:
        put(78, 0.45, 0.6)
        put(308, 0.55, 0.6)
        put(13, 0.5, 0.6 - mouth_gap / 2.0)
        put(14, 0.5, 0.6 + mouth_gap / 2.0)
    return pts


@pytest.fixture
def face():
    return make_face
