"""
Incremental Reconstruction Module

증분식(incremental) SfM의 장면 상태와 복원 루프를 구현합니다.

복원 흐름:
1. 초기 이미지 쌍 선택: 호모그래피 인라이어 비율이 낮은(시차가 큰) 쌍부터
   상대 포즈를 추정하고, 포즈 인라이어 비율이 충분한 첫 쌍을 삼각측량
2. 이미지 추가: 현재 포인트 클라우드와 2D-3D 대응이 가장 많은 이미지를
   하나씩 골라 PnP로 포즈를 구하고, 기존 이미지들과 삼각측량
3. 모든 이미지가 처리되거나 더 이상 대응이 없으면 종료
"""

from enum import Enum

import numpy as np
from typing import Dict, List, Optional, Sequence, Set, Tuple
from dataclasses import dataclass, field

from .camera_pose import CameraPose, CameraPoseEstimator
from .common import (
    ImagePair, Intrinsics, NoBaselineError, PointCloud, ProgressCallback,
)
from .export import ColorSource, export_to_ply
from .feature_detection import FeatureSet
from .homography import HomographyEstimator
from .match_matrix import MatchMatrix
from .triangulation import Triangulator


# 호모그래피 비율 계산에 필요한 최소 매칭 수
MIN_POINTS_FOR_HOMOGRAPHY = 100

# 초기 쌍으로 인정하는 최소 포즈 인라이어 비율
POSE_INLIER_MIN_RATIO = 0.5


class ReconstructionPhase(Enum):
    """복원 루프 상태"""
    BOOTSTRAPPING = "bootstrapping"
    REGISTERING = "registering"
    FINISHED = "finished"
    FAILED = "failed"


class ReconstructionStatus(Enum):
    """최종 결과 상태"""
    COMPLETE = "complete"   # 모든 이미지의 포즈 복원
    PARTIAL = "partial"     # 일부 이미지만 포즈 복원


@dataclass
class Correspondences2D3D:
    """새 이미지의 2D 점과 포인트 클라우드 3D 점의 대응"""
    points_2d: List[np.ndarray] = field(default_factory=list)
    points_3d: List[np.ndarray] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.points_2d)


@dataclass
class ReconstructionResult:
    """SfM 복원 결과"""
    poses: Dict[int, CameraPose]    # 이미지 인덱스 -> 포즈
    cloud: PointCloud               # 트랙 리스트
    features: List[FeatureSet]      # 이미지별 특징점 (색상 추출용)
    num_views: int
    baseline: Optional[ImagePair] = None

    @property
    def posed_views(self) -> List[int]:
        return sorted(self.poses)

    @property
    def unposed_views(self) -> List[int]:
        return [v for v in range(self.num_views) if v not in self.poses]

    @property
    def status(self) -> ReconstructionStatus:
        if self.unposed_views:
            return ReconstructionStatus.PARTIAL
        return ReconstructionStatus.COMPLETE

    @property
    def points_3d(self) -> np.ndarray:
        """Nx3 포인트 클라우드"""
        if not self.cloud:
            return np.zeros((0, 3), dtype=np.float64)
        return np.array([track.point for track in self.cloud], dtype=np.float64)

    def export_to_ply(self, output_path: str, images: Sequence[np.ndarray]) -> None:
        """포인트 클라우드를 PLY로 저장합니다 (색상은 images에서 추출)."""
        export_to_ply(output_path, self.cloud, ColorSource(images, self.features))


class ReconstructionState:
    """
    증분식 복원의 장면 상태

    done_views: 처리가 끝난 이미지 (포즈 복원 실패 포함, 재시도하지 않음)
    good_views: 포즈가 있고 새 이미지와의 삼각측량 상대로 쓰는 이미지
    poses: 이미지별 포즈 (한 번 설정되면 바뀌지 않음)
    cloud: 트랙 리스트 (추가만 가능, 중복 제거 없음)

    상태는 이 객체를 소유한 스레드 하나만 수정합니다.

    Example:
        >>> state = ReconstructionState(features, match_matrix, intrinsics)
        >>> result = state.run()
        >>> print(result.status, result.unposed_views)
    """

    def __init__(self,
                 features: Sequence[FeatureSet],
                 match_matrix: MatchMatrix,
                 intrinsics: Intrinsics,
                 pose_estimator: Optional[CameraPoseEstimator] = None,
                 homography_estimator: Optional[HomographyEstimator] = None,
                 triangulator: Optional[Triangulator] = None,
                 min_points_for_homography: int = MIN_POINTS_FOR_HOMOGRAPHY,
                 pose_inlier_min_ratio: float = POSE_INLIER_MIN_RATIO,
                 log: Optional[ProgressCallback] = None):
        self.features = list(features)
        self.match_matrix = match_matrix
        self.intrinsics = intrinsics
        self.pose_estimator = pose_estimator or CameraPoseEstimator()
        self.homography_estimator = homography_estimator or HomographyEstimator()
        self.triangulator = triangulator or Triangulator()
        self.min_points_for_homography = min_points_for_homography
        self.pose_inlier_min_ratio = pose_inlier_min_ratio
        self.log = log or (lambda message: None)

        self.num_views = len(self.features)
        self.done_views: Set[int] = set()
        self.good_views: Set[int] = set()
        self.poses: Dict[int, CameraPose] = {}
        self.cloud: PointCloud = []
        self.baseline: Optional[ImagePair] = None
        self.phase = ReconstructionPhase.BOOTSTRAPPING

    def run(self) -> ReconstructionResult:
        """
        초기 쌍을 찾고 나머지 이미지를 차례로 추가합니다.

        Raises:
            NoBaselineError: 초기 쌍을 찾지 못한 경우
        """
        try:
            self.find_baseline_triangulation()
        except NoBaselineError:
            self.phase = ReconstructionPhase.FAILED
            raise
        self.add_more_views()
        return self.result()

    def result(self) -> ReconstructionResult:
        return ReconstructionResult(
            poses=dict(self.poses),
            cloud=list(self.cloud),
            features=self.features,
            num_views=self.num_views,
            baseline=self.baseline
        )

    def sort_views_for_baseline(self) -> List[Tuple[float, ImagePair]]:
        """
        이미지 쌍을 호모그래피 인라이어 비율의 오름차순으로 정렬합니다.

        매칭이 min_points_for_homography 미만인 쌍은 비율 1.0(최악)으로 둡니다.
        비율이 같으면 쌍 순서를 유지합니다.

        Returns:
            List[Tuple[float, ImagePair]]: (비율, 쌍) 리스트
        """
        self.log("호모그래피 인라이어 비율 계산...")
        ratios = []
        for pair, matches in self.match_matrix.items():
            if len(matches) < self.min_points_for_homography:
                ratios.append((1.0, pair))
                continue

            ratio = self.homography_estimator.inlier_ratio(
                self.features[pair.left], self.features[pair.right], matches
            )
            ratios.append((ratio, pair))
            self.log(f"  이미지 {pair.left}-{pair.right}: 호모그래피 인라이어 비율 {ratio:.3f}")

        return sorted(ratios, key=lambda item: item[0])

    def find_baseline_triangulation(self) -> ImagePair:
        """
        초기 이미지 쌍을 찾아 삼각측량하고 상태를 초기화합니다.

        처음으로 포즈 인라이어 비율 조건을 만족한 쌍을 채택하며,
        이후 후보는 시도하지 않습니다.

        Returns:
            ImagePair: 채택된 초기 쌍

        Raises:
            NoBaselineError: 조건을 만족하는 쌍이 없는 경우
        """
        self.log("\n=== 초기 쌍 탐색 ===")
        self.phase = ReconstructionPhase.BOOTSTRAPPING

        for ratio, pair in self.sort_views_for_baseline():
            left, right = pair.left, pair.right
            matches = self.match_matrix.get(left, right)
            self.log(f"  시도: 이미지 {left}-{right} (호모그래피 비율 {ratio:.3f}, "
                     f"{len(matches)}개 매칭)")

            relative = self.pose_estimator.estimate_relative_pose(
                self.intrinsics, matches, self.features[left], self.features[right]
            )
            if relative is None:
                self.log("  경고: 카메라 포즈 추정 실패")
                continue

            pose_inlier_ratio = len(relative.matches) / len(matches)
            self.log(f"  포즈 인라이어 비율: {pose_inlier_ratio:.3f}")
            if pose_inlier_ratio < self.pose_inlier_min_ratio:
                self.log("  포즈 인라이어 부족, 건너뜀")
                continue

            self.match_matrix.replace(left, right, relative.matches)

            tracks = self.triangulator.triangulate_views(
                self.intrinsics, pair, relative.matches,
                self.features[left], self.features[right],
                relative.pose_left, relative.pose_right
            )

            self.cloud.extend(tracks)
            self.poses[left] = relative.pose_left
            self.poses[right] = relative.pose_right
            self.done_views.update((left, right))
            self.good_views.update((left, right))
            self.baseline = pair

            self.log(f"  초기 쌍: 이미지 {left}-{right}, {len(tracks)}개 3D 점")
            return pair

        raise NoBaselineError("포즈 인라이어 비율을 만족하는 초기 이미지 쌍이 없습니다.")

    def find_2d_3d_matches(self) -> Dict[int, Correspondences2D3D]:
        """
        처리되지 않은 각 이미지와 현재 포인트 클라우드의 2D-3D 대응을 찾습니다.

        트랙마다 관측 이미지를 인덱스 순서로 살펴, 해당 키포인트가 후보
        이미지의 키포인트와 매칭된 첫 번째 경우 하나만 대응으로 사용합니다.

        Returns:
            Dict[int, Correspondences2D3D]: 이미지 인덱스 -> 대응
        """
        lookups: Dict[Tuple[int, int], Dict[int, int]] = {}
        result = {}

        for view in range(self.num_views):
            if view in self.done_views:
                continue

            correspondences = Correspondences2D3D()
            view_points = self.features[view].points

            for track in self.cloud:
                for origin, keypoint in sorted(track.originating_views.items()):
                    if (origin, view) not in lookups:
                        lookups[(origin, view)] = self._keypoint_lookup(origin, view)
                    matched = lookups[(origin, view)].get(keypoint)
                    if matched is not None:
                        correspondences.points_2d.append(view_points[matched])
                        correspondences.points_3d.append(track.point)
                        break

            result[view] = correspondences

        return result

    def _keypoint_lookup(self, origin: int, view: int) -> Dict[int, int]:
        """origin 이미지 키포인트 -> view 이미지 키포인트 (첫 매칭 우선)"""
        lookup: Dict[int, int] = {}
        if origin == view:
            return lookup
        for m in self.match_matrix.get(origin, view):
            if origin < view:
                lookup.setdefault(m.queryIdx, m.trainIdx)
            else:
                lookup.setdefault(m.trainIdx, m.queryIdx)
        return lookup

    def add_more_views(self) -> None:
        """
        이미지를 하나씩 추가하며 포즈를 복원하고 포인트 클라우드를 키웁니다.

        2D-3D 대응이 있는 이미지가 없으면 일부만 복원된 상태로 종료합니다.
        """
        self.log("\n=== 이미지 추가 ===")
        self.phase = ReconstructionPhase.REGISTERING

        while len(self.done_views) != self.num_views:
            matches_2d3d = self.find_2d_3d_matches()

            best_view, best_count = None, 0
            for view, correspondences in sorted(matches_2d3d.items()):
                if len(correspondences) > best_count:
                    best_view, best_count = view, len(correspondences)

            if best_view is None:
                remaining = sorted(set(range(self.num_views)) - self.done_views)
                self.log(f"  포인트 클라우드와 대응이 있는 이미지가 없습니다. "
                         f"남은 이미지: {remaining}")
                break

            self.log(f"  이미지 {best_view} 추가: {best_count}개 2D-3D 대응")
            self.done_views.add(best_view)

            correspondences = matches_2d3d[best_view]
            pose = self.pose_estimator.estimate_pose_from_correspondences(
                self.intrinsics,
                np.array(correspondences.points_2d),
                np.array(correspondences.points_3d)
            )
            if pose is None:
                self.log(f"  경고: 이미지 {best_view} 포즈 추정 실패")
                continue

            self.poses[best_view] = pose
            self._triangulate_with_good_views(best_view)
            self.good_views.add(best_view)

        self.phase = ReconstructionPhase.FINISHED
        self.log(f"  포즈 복원: {len(self.poses)}/{self.num_views}개 이미지, "
                 f"3D 점 {len(self.cloud)}개")

    def _triangulate_with_good_views(self, new_view: int) -> None:
        """새 이미지와 기존 good view 사이에서 새 트랙을 만듭니다."""
        for good_view in sorted(self.good_views):
            pair = ImagePair.of(good_view, new_view)
            left, right = pair.left, pair.right

            # 매칭 정제 목적으로만 상대 포즈를 다시 추정
            relative = self.pose_estimator.estimate_relative_pose(
                self.intrinsics, self.match_matrix.get(left, right),
                self.features[left], self.features[right]
            )
            if relative is None:
                self.log(f"  경고: 이미지 {left}-{right} 매칭 정제 실패, 건너뜀")
                continue

            self.match_matrix.replace(left, right, relative.matches)

            tracks = self.triangulator.triangulate_views(
                self.intrinsics, pair, relative.matches,
                self.features[left], self.features[right],
                self.poses[left], self.poses[right]
            )
            self.cloud.extend(tracks)
            self.log(f"  이미지 {left}-{right}: {len(tracks)}개 3D 점 추가")
