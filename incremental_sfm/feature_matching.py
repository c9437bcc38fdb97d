"""
Feature Matching Module

두 이미지 간의 특징점 매칭을 수행합니다.
Brute-Force k-NN 매칭 후 Lowe's ratio test로 좋은 매칭만 남깁니다.
기하학적 검증은 하지 않습니다 (camera_pose 모듈 참고).
"""

import threading

import cv2
import numpy as np
from typing import List, Tuple

from .feature_detection import FeatureSet


# Lowe's ratio test 임계값
DEFAULT_RATIO_THRESHOLD = 0.8


class FeatureMatcher:
    """
    특징점 매칭 클래스

    매칭 결과의 queryIdx는 left, trainIdx는 right FeatureSet을 가리킵니다.

    OpenCV 매처는 스레드마다 따로 생성하므로 한 인스턴스를
    여러 작업 스레드에서 함께 사용할 수 있습니다.

    Attributes:
        descriptor_type: "orb" 또는 "sift" (거리 계산법 선택)
        ratio_threshold: Lowe's ratio test 임계값
    """

    def __init__(self, descriptor_type: str = "orb",
                 ratio_threshold: float = DEFAULT_RATIO_THRESHOLD):
        """
        매처 초기화

        Args:
            descriptor_type: "orb" (Hamming 거리) 또는 "sift" (L2 거리)
            ratio_threshold: Lowe's ratio test 임계값 (기본값 0.8)
        """
        self.descriptor_type = descriptor_type.lower()
        if self.descriptor_type not in ("orb", "sift"):
            raise ValueError(f"지원하지 않는 디스크립터 타입: {self.descriptor_type}")
        self.ratio_threshold = ratio_threshold
        self._local = threading.local()

    @property
    def norm_type(self) -> int:
        if self.descriptor_type == "orb":
            return cv2.NORM_HAMMING
        return cv2.NORM_L2

    def _get_matcher(self) -> cv2.BFMatcher:
        """현재 스레드 전용 매처를 반환합니다."""
        matcher = getattr(self._local, "matcher", None)
        if matcher is None:
            matcher = cv2.BFMatcher(self.norm_type, crossCheck=False)
            self._local.matcher = matcher
        return matcher

    def match(self, left: FeatureSet, right: FeatureSet) -> List[cv2.DMatch]:
        """
        두 특징점 집합 간의 매칭을 수행합니다.

        left의 각 디스크립터에 대해 right에서 가장 가까운 두 이웃을 찾고,
        nearest < ratio * second 인 경우만 남깁니다.

        Args:
            left: 왼쪽(작은 인덱스) 이미지의 특징점
            right: 오른쪽 이미지의 특징점

        Returns:
            List[cv2.DMatch]: ratio test를 통과한 매칭
        """
        if len(left) == 0 or len(right) == 0:
            return []

        # kNN 매칭 (k=2)
        knn_matches = self._get_matcher().knnMatch(
            left.descriptors, right.descriptors, k=2
        )

        # Lowe's ratio test
        good_matches = []
        for match_pair in knn_matches:
            if len(match_pair) == 2:
                m, n = match_pair
                if m.distance < self.ratio_threshold * n.distance:
                    good_matches.append(m)

        return good_matches


def extract_matched_points(left: FeatureSet,
                           right: FeatureSet,
                           matches: List[cv2.DMatch]) -> Tuple[np.ndarray, np.ndarray]:
    """
    매칭된 키포인트의 좌표를 매칭 순서대로 정렬해 추출합니다.

    Args:
        left, right: 각 이미지의 특징점
        matches: 매칭 결과

    Returns:
        Tuple[np.ndarray, np.ndarray]: 매칭된 점들의 좌표 (Nx2, Nx2)
    """
    query = [m.queryIdx for m in matches]
    train = [m.trainIdx for m in matches]
    return left.points[query].reshape(-1, 2), right.points[train].reshape(-1, 2)
