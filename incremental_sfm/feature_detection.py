"""
Feature Detection Module

특징점 검출을 위한 ORB/SIFT 알고리즘 구현.
이미지에서 키포인트와 디스크립터를 추출합니다.
"""

import cv2
import numpy as np
from typing import List, Optional
from dataclasses import dataclass


# 이미지당 최대 특징점 수
DEFAULT_NUM_FEATURES = 5000

# 알고리즘별 디스크립터 (길이, 타입)
DESCRIPTOR_FORMATS = {
    "orb": (32, np.uint8),
    "sift": (128, np.float32),
}


@dataclass
class FeatureSet:
    """
    한 이미지의 특징점 집합

    keypoints와 descriptors의 행은 같은 순서로 대응합니다.
    생성 후에는 수정하지 않습니다.
    """
    keypoints: List[cv2.KeyPoint]
    descriptors: np.ndarray

    def __post_init__(self):
        if len(self.keypoints) != self.descriptors.shape[0]:
            raise ValueError(
                f"키포인트 수({len(self.keypoints)})와 디스크립터 행 수"
                f"({self.descriptors.shape[0]})가 다릅니다."
            )
        self.points = keypoints_to_points(self.keypoints)

    def __len__(self) -> int:
        return len(self.keypoints)

    @classmethod
    def empty(cls, algorithm: str = "orb") -> "FeatureSet":
        size, dtype = DESCRIPTOR_FORMATS[algorithm]
        return cls(keypoints=[], descriptors=np.zeros((0, size), dtype=dtype))

    @classmethod
    def from_points(cls, points: np.ndarray, descriptors: np.ndarray,
                    size: float = 31.0) -> "FeatureSet":
        """좌표 배열로부터 FeatureSet을 만듭니다 (합성 데이터용)."""
        keypoints = [cv2.KeyPoint(float(x), float(y), size) for x, y in points]
        return cls(keypoints=keypoints, descriptors=descriptors)


def keypoints_to_points(keypoints: List[cv2.KeyPoint]) -> np.ndarray:
    """키포인트 리스트를 Nx2 좌표 배열로 변환합니다."""
    if not keypoints:
        return np.zeros((0, 2), dtype=np.float64)
    return np.array([kp.pt for kp in keypoints], dtype=np.float64)


class FeatureDetector:
    """
    특징점 검출기 클래스

    ORB(기본값)와 SIFT 알고리즘을 지원합니다.
    같은 이미지에 대해서는 항상 같은 결과를 돌려줍니다.

    Attributes:
        algorithm: 사용할 알고리즘 ("orb" 또는 "sift")
        detector: OpenCV 특징점 검출기 객체

    Example:
        >>> detector = FeatureDetector(algorithm="orb", nfeatures=5000)
        >>> features = detector.extract(image)
        >>> print(f"검출된 특징점: {len(features)}개")
    """

    def __init__(self, algorithm: str = "orb",
                 nfeatures: int = DEFAULT_NUM_FEATURES, **kwargs):
        """
        특징점 검출기 초기화

        Args:
            algorithm: "orb" 또는 "sift"
            nfeatures: 검출할 최대 특징점 수
            **kwargs: 알고리즘별 추가 파라미터
                - orb: scaleFactor, nlevels, edgeThreshold, patchSize
                - sift: nOctaveLayers, contrastThreshold, edgeThreshold, sigma
        """
        self.algorithm = algorithm.lower()
        self.nfeatures = nfeatures
        self.detector = self._create_detector(**kwargs)

    def _create_detector(self, **kwargs):
        """알고리즘에 맞는 검출기 생성"""
        if self.algorithm == "orb":
            return cv2.ORB_create(
                nfeatures=self.nfeatures,
                scaleFactor=kwargs.get("scaleFactor", 1.2),
                nlevels=kwargs.get("nlevels", 8),
                edgeThreshold=kwargs.get("edgeThreshold", 31),
                patchSize=kwargs.get("patchSize", 31)
            )
        elif self.algorithm == "sift":
            return cv2.SIFT_create(
                nfeatures=self.nfeatures,
                nOctaveLayers=kwargs.get("nOctaveLayers", 3),
                contrastThreshold=kwargs.get("contrastThreshold", 0.04),
                edgeThreshold=kwargs.get("edgeThreshold", 10),
                sigma=kwargs.get("sigma", 1.6)
            )
        else:
            raise ValueError(f"지원하지 않는 알고리즘: {self.algorithm}")

    def extract(self, image: np.ndarray,
                mask: Optional[np.ndarray] = None) -> FeatureSet:
        """
        이미지에서 특징점을 추출합니다.

        특징점이 하나도 없으면 빈 FeatureSet을 돌려줍니다 (오류 아님).

        Args:
            image: 입력 이미지 (BGR 또는 그레이스케일)
            mask: 검출 영역 마스크 (선택)

        Returns:
            FeatureSet: 키포인트와 디스크립터
        """
        # 그레이스케일 변환
        if len(image.shape) == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image

        keypoints, descriptors = self.detector.detectAndCompute(gray, mask)

        if descriptors is None or len(keypoints) == 0:
            return FeatureSet.empty(self.algorithm)

        return FeatureSet(keypoints=list(keypoints), descriptors=descriptors)
