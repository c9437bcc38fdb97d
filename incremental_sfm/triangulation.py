"""
Triangulation Module

두 이미지의 대응점과 카메라 포즈로부터 3D 점을 복원합니다.

삼각측량(Triangulation)은 두 시점에서 관찰된 2D 점을 역투영하여
교차점을 계산하는 방식으로 3D 좌표를 추정합니다. 복원한 점은 두 이미지에
다시 투영해 재투영 에러가 큰 점을 버립니다.
"""

import cv2
import numpy as np
from typing import List

from .camera_pose import CameraPose
from .common import ImagePair, Intrinsics, Track
from .feature_detection import FeatureSet
from .feature_matching import extract_matched_points


# 허용하는 최대 재투영 에러 (픽셀)
DEFAULT_MAX_REPROJECTION_ERROR = 10.0


class Triangulator:
    """
    삼각측량 클래스

    정규화 좌표계에서 DLT(Direct Linear Transform) 방식으로 삼각측량하며,
    OpenCV의 triangulatePoints 함수로 구현됩니다.

    Attributes:
        max_reprojection_error: 두 이미지 각각에서 허용하는 최대 재투영 에러 (픽셀)
    """

    def __init__(self, max_reprojection_error: float = DEFAULT_MAX_REPROJECTION_ERROR):
        self.max_reprojection_error = max_reprojection_error

    def triangulate_views(self, intrinsics: Intrinsics,
                          pair: ImagePair,
                          matches: List[cv2.DMatch],
                          left: FeatureSet,
                          right: FeatureSet,
                          pose_left: CameraPose,
                          pose_right: CameraPose) -> List[Track]:
        """
        이미지 쌍의 매칭으로부터 트랙을 생성합니다.

        삼각측량 원리:
            x = K [R | t] X

        K^-1 로 정규화한 점과 [R | t] 로 DLT를 풀어 X를 계산합니다.

        Args:
            intrinsics: 카메라 내부 파라미터
            pair: 이미지 인덱스 쌍 (matches의 query = pair.left)
            matches: 매칭
            left, right: 각 이미지의 특징점
            pose_left, pose_right: 각 이미지의 포즈

        Returns:
            List[Track]: 재투영 검사를 통과한 트랙 (없으면 빈 리스트)
        """
        if not matches:
            return []

        pts1, pts2 = extract_matched_points(left, right, matches)

        # 정규화 좌표 (K^-1 x)
        norm1 = cv2.undistortPoints(pts1.reshape(-1, 1, 2), intrinsics.K, intrinsics.distortion)
        norm2 = cv2.undistortPoints(pts2.reshape(-1, 1, 2), intrinsics.K, intrinsics.distortion)

        # 삼각 측량 (결과: 4xN 동차 좌표)
        points_4d = cv2.triangulatePoints(
            pose_left.matrix, pose_right.matrix,
            np.ascontiguousarray(norm1.reshape(-1, 2).T),
            np.ascontiguousarray(norm2.reshape(-1, 2).T)
        )

        # 동차 좌표를 3D 좌표로 변환
        with np.errstate(divide="ignore", invalid="ignore"):
            points_3d = (points_4d[:3] / points_4d[3]).T  # Nx3
        finite = np.all(np.isfinite(points_3d), axis=1)
        points_3d[~finite] = 0.0

        error1 = self._reprojection_errors(intrinsics, pose_left, points_3d, pts1)
        error2 = self._reprojection_errors(intrinsics, pose_right, points_3d, pts2)

        valid = (finite
                 & (error1 <= self.max_reprojection_error)
                 & (error2 <= self.max_reprojection_error))

        tracks = []
        for i in np.flatnonzero(valid):
            tracks.append(Track(
                point=points_3d[i].copy(),
                originating_views={
                    pair.left: matches[i].queryIdx,
                    pair.right: matches[i].trainIdx,
                }
            ))
        return tracks

    def _reprojection_errors(self, intrinsics: Intrinsics,
                             pose: CameraPose,
                             points_3d: np.ndarray,
                             points_2d: np.ndarray) -> np.ndarray:
        """
        점별 재투영 에러를 계산합니다.

        재투영 에러 = 원래 2D 점과 3D 점을 다시 투영한 점 사이의 거리
        """
        rvec, _ = cv2.Rodrigues(pose.R)
        projected, _ = cv2.projectPoints(
            points_3d, rvec, pose.t, intrinsics.K, intrinsics.distortion
        )
        return np.linalg.norm(projected.reshape(-1, 2) - points_2d, axis=1)
