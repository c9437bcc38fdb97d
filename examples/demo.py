"""
SfM Demo Script

Structure from Motion 데모 스크립트입니다.
합성 큐브 장면으로 증분식 3D 재구성을 시연합니다.
"""

import sys
import numpy as np
from pathlib import Path

# 프로젝트 루트를 path에 추가
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from incremental_sfm.sfm_pipeline import SfMPipeline
from incremental_sfm.export import save_camera_poses
from incremental_sfm.synthetic import (
    create_color_images, create_cube_scene, create_isolated_features,
)


def rotation_error_degrees(R_est: np.ndarray, R_true: np.ndarray) -> float:
    """두 회전 행렬 사이의 각도 (도)"""
    cos = np.clip((np.trace(R_est.T @ R_true) - 1) / 2, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos)))


def demo_cube_reconstruction():
    """큐브 4장 재구성 데모"""
    print("\n" + "="*50)
    print("데모 1: 합성 큐브 재구성")
    print("="*50 + "\n")

    scene = create_cube_scene(angles=(-0.3, -0.1, 0.15, 0.4))
    print(f"생성된 3D 점: {len(scene.points_3d)}개")
    print(f"카메라 행렬:\n{scene.intrinsics.K}")

    pipeline = SfMPipeline()
    result = pipeline.reconstruct(scene.features, scene.intrinsics)

    print("\n상대 회전 에러 (첫 번째 이미지 기준):")
    for view in result.posed_views[1:]:
        R_est = result.poses[view].R @ result.poses[0].R.T
        R_true = scene.poses[view].R @ scene.poses[0].R.T
        print(f"  이미지 {view}: {rotation_error_degrees(R_est, R_true):.4f}도")

    output_dir = project_root / "output"
    output_dir.mkdir(parents=True, exist_ok=True)

    images = create_color_images(len(scene.features))
    result.export_to_ply(str(output_dir / "cube.ply"), images)
    save_camera_poses(str(output_dir / "cube_poses.txt"), result.poses)
    print(f"\n포인트 클라우드 저장됨: {output_dir / 'cube.ply'}")


def demo_partial_reconstruction():
    """대응이 없는 이미지가 섞인 경우"""
    print("\n" + "="*50)
    print("데모 2: 일부 이미지만 복원")
    print("="*50 + "\n")

    scene = create_cube_scene()
    features = scene.features + [create_isolated_features(200)]

    pipeline = SfMPipeline()
    result = pipeline.reconstruct(features, scene.intrinsics)

    print(f"\n상태: {result.status.value}")
    print(f"포즈 미복원 이미지: {result.unposed_views}")


def main():
    """모든 데모 실행"""
    print("="*60)
    print("Structure from Motion (SfM) 데모")
    print("="*60)

    demo_cube_reconstruction()
    demo_partial_reconstruction()

    print("\n" + "="*60)
    print("모든 데모 완료!")
    print("="*60)
    print("\n실제 이미지로 SfM을 실행하려면:")
    print("  python -m incremental_sfm.sfm_pipeline <image_dir> [output.ply]")


if __name__ == "__main__":
    main()
