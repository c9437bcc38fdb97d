"""
Camera Pose Estimation Module

카메라 포즈(R, t)를 추정합니다.

- 상대 포즈: 두 이미지의 매칭으로부터 에센셜 행렬을 RANSAC으로 계산하고
  R, t로 분해합니다. 왼쪽 카메라를 원점(단위 행렬)으로 둡니다.
- 절대 포즈: 이미 복원된 3D 점과 새 이미지의 2D 점 대응으로부터
  PnP(Perspective-n-Point)를 RANSAC으로 풉니다.

두 연산 모두 실패 시 예외 대신 None을 반환합니다.
"""

import cv2
import numpy as np
from typing import List, Optional
from dataclasses import dataclass

from .common import Intrinsics
from .feature_detection import FeatureSet
from .feature_matching import extract_matched_points


# 5-point 알고리즘의 최소 대응점 수
MIN_POINTS_FOR_ESSENTIAL = 5

# PnP RANSAC의 최소 대응점 수
MIN_POINTS_FOR_PNP = 6


@dataclass
class CameraPose:
    """카메라 포즈 (world -> camera)"""
    R: np.ndarray       # 3x3 회전 행렬
    t: np.ndarray       # 3x1 평행이동 벡터

    def __post_init__(self):
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3, 1)

    @classmethod
    def identity(cls) -> "CameraPose":
        return cls(R=np.eye(3), t=np.zeros((3, 1)))

    @classmethod
    def from_matrix(cls, Rt: np.ndarray) -> "CameraPose":
        Rt = np.asarray(Rt, dtype=np.float64)
        return cls(R=Rt[:, :3], t=Rt[:, 3])

    @property
    def matrix(self) -> np.ndarray:
        """3x4 [R | t]"""
        return np.hstack([self.R, self.t])

    @property
    def center(self) -> np.ndarray:
        """월드 좌표계에서의 카메라 중심 C = -R^T t"""
        return (-self.R.T @ self.t).ravel()

    def to_projection_matrix(self, K: np.ndarray) -> np.ndarray:
        """
        카메라 내부 파라미터를 결합하여 투영 행렬을 생성합니다.

        P = K [R | t]

        Args:
            K: 3x3 카메라 내부 파라미터 행렬

        Returns:
            np.ndarray: 3x4 투영 행렬
        """
        return K @ self.matrix


@dataclass
class RelativePose:
    """상대 포즈 추정 결과"""
    matches: List[cv2.DMatch]   # 에센셜 행렬 인라이어 매칭
    pose_left: CameraPose       # 항상 단위 포즈
    pose_right: CameraPose


class CameraPoseEstimator:
    """
    카메라 포즈 추정 클래스

    Attributes:
        prob: 에센셜 행렬 RANSAC 신뢰도
        threshold: 에센셜 행렬 RANSAC 임계값 (픽셀)
        pnp_reprojection_error: PnP RANSAC 재투영 임계값 (픽셀)
        pnp_confidence: PnP RANSAC 신뢰도
        pnp_iterations: PnP RANSAC 반복 횟수
    """

    def __init__(self, prob: float = 0.999,
                 threshold: float = 1.0,
                 pnp_reprojection_error: float = 10.0,
                 pnp_confidence: float = 0.99,
                 pnp_iterations: int = 100):
        self.prob = prob
        self.threshold = threshold
        self.pnp_reprojection_error = pnp_reprojection_error
        self.pnp_confidence = pnp_confidence
        self.pnp_iterations = pnp_iterations

    def estimate_relative_pose(self, intrinsics: Intrinsics,
                               matches: List[cv2.DMatch],
                               left: FeatureSet,
                               right: FeatureSet) -> Optional[RelativePose]:
        """
        매칭으로부터 두 카메라의 상대 포즈를 추정합니다.

        에센셜 행렬은 4가지 (R, t) 조합으로 분해되며, recoverPose가
        cheirality check(두 카메라 앞에 있는 점의 수)로 올바른 조합을 고릅니다.
        RANSAC과 cheirality check를 모두 통과한 매칭만 반환합니다.

        Args:
            intrinsics: 카메라 내부 파라미터
            matches: left -> right 매칭
            left, right: 각 이미지의 특징점

        Returns:
            RelativePose: 추정 결과, 대응점 부족 또는 수렴 실패 시 None
        """
        if len(matches) < MIN_POINTS_FOR_ESSENTIAL:
            return None

        pts1, pts2 = extract_matched_points(left, right, matches)

        try:
            E, mask = cv2.findEssentialMat(
                pts1, pts2,
                intrinsics.K,
                method=cv2.RANSAC,
                prob=self.prob,
                threshold=self.threshold
            )
            if E is None or mask is None:
                return None
            # 해가 여러 개면 첫 번째 사용
            if E.shape != (3, 3):
                E = E[:3]

            _, R, t, mask = cv2.recoverPose(E, pts1, pts2, intrinsics.K, mask=mask)
        except cv2.error:
            return None

        inliers = mask.ravel() > 0
        pruned = [m for m, keep in zip(matches, inliers) if keep]

        return RelativePose(
            matches=pruned,
            pose_left=CameraPose.identity(),
            pose_right=CameraPose(R=R, t=t)
        )

    def estimate_pose_from_correspondences(self, intrinsics: Intrinsics,
                                           points_2d: np.ndarray,
                                           points_3d: np.ndarray) -> Optional[CameraPose]:
        """
        2D-3D 대응점으로부터 카메라의 절대 포즈를 추정합니다 (PnP RANSAC).

        Args:
            intrinsics: 카메라 내부 파라미터
            points_2d: 새 이미지의 2D 점 (Nx2)
            points_3d: 대응하는 3D 점 (Nx3)

        Returns:
            CameraPose: 추정된 포즈, 실패 시 None
        """
        points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)

        if len(points_2d) != len(points_3d):
            raise ValueError("2D 점과 3D 점의 수가 다릅니다.")
        if len(points_2d) < MIN_POINTS_FOR_PNP:
            return None

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                points_3d,
                points_2d,
                intrinsics.K,
                intrinsics.distortion,
                iterationsCount=self.pnp_iterations,
                reprojectionError=self.pnp_reprojection_error,
                confidence=self.pnp_confidence
            )
        except cv2.error:
            return None

        if not success or inliers is None or len(inliers) == 0:
            return None

        R, _ = cv2.Rodrigues(rvec)
        return CameraPose(R=R, t=tvec)
