"""
Homography Module

두 이미지의 대응점이 하나의 평면 변환(호모그래피) x' = H x 로
얼마나 설명되는지 계산합니다.

호모그래피 인라이어 비율이 낮을수록 장면이 평면이 아니고 시차가 크다는
뜻이므로, 초기(baseline) 이미지 쌍 선택의 기준으로 사용합니다.
"""

import cv2
import numpy as np
from typing import List, Optional
from dataclasses import dataclass

from .feature_detection import FeatureSet
from .feature_matching import extract_matched_points


# RANSAC 재투영 임계값 (픽셀)
DEFAULT_RANSAC_THRESHOLD = 10.0

# 호모그래피 추정에 필요한 최소 대응점 수
MIN_POINTS_FOR_HOMOGRAPHY_FIT = 4


@dataclass
class HomographyResult:
    """호모그래피 계산 결과"""
    H: np.ndarray           # 3x3 호모그래피 행렬
    mask: np.ndarray        # 인라이어 마스크
    num_inliers: int        # 인라이어 수
    inlier_ratio: float     # 인라이어 비율


class HomographyEstimator:
    """
    호모그래피 추정 클래스

    RANSAC을 사용하여 robust하게 호모그래피를 계산합니다.

    Attributes:
        ransac_threshold: RANSAC 임계값 (픽셀 단위)
    """

    def __init__(self, ransac_threshold: float = DEFAULT_RANSAC_THRESHOLD):
        self.ransac_threshold = ransac_threshold

    def estimate(self, pts1: np.ndarray,
                 pts2: np.ndarray) -> Optional[HomographyResult]:
        """
        대응점으로부터 호모그래피를 계산합니다.

        Args:
            pts1: 첫 번째 이미지의 점들 (Nx2)
            pts2: 두 번째 이미지의 점들 (Nx2)

        Returns:
            HomographyResult: 계산 결과, 실패 시 None
        """
        if len(pts1) < MIN_POINTS_FOR_HOMOGRAPHY_FIT:
            return None

        try:
            H, mask = cv2.findHomography(
                pts1, pts2, cv2.RANSAC, self.ransac_threshold
            )
        except cv2.error:
            return None

        if H is None or mask is None:
            return None

        mask = mask.ravel()
        num_inliers = int(np.count_nonzero(mask))

        return HomographyResult(
            H=H,
            mask=mask,
            num_inliers=num_inliers,
            inlier_ratio=num_inliers / len(mask)
        )

    def count_inliers(self, left: FeatureSet, right: FeatureSet,
                      matches: List[cv2.DMatch]) -> int:
        """매칭 중 호모그래피 인라이어 수 (실패 시 0)"""
        pts1, pts2 = extract_matched_points(left, right, matches)
        result = self.estimate(pts1, pts2)
        return result.num_inliers if result is not None else 0

    def inlier_ratio(self, left: FeatureSet, right: FeatureSet,
                     matches: List[cv2.DMatch]) -> float:
        """매칭 중 호모그래피 인라이어 비율 (매칭이 없으면 0)"""
        if not matches:
            return 0.0
        return self.count_inliers(left, right, matches) / len(matches)
