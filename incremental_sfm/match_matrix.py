"""
Match Matrix Module

모든 이미지 쌍 (i, j), i < j 의 매칭 결과를 보관합니다.

매칭 계산은 작업 스레드 풀에서 병렬로 수행합니다. 이미지 쌍 목록을
연속된 구간으로 나누어 각 스레드가 자기 구간만 계산하고 기록하므로
행렬 자체에는 잠금이 필요 없고, 로그 출력에만 잠금을 사용합니다.
"""

import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor

import cv2
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .common import ImagePair, ProgressCallback
from .feature_detection import FeatureSet
from .feature_matching import FeatureMatcher


def default_num_workers() -> int:
    """하드웨어 스레드 수 - 1 (최소 1)"""
    return max(1, (os.cpu_count() or 1) - 1)


def partition_pairs(pairs: Sequence[ImagePair],
                    num_workers: int) -> List[List[ImagePair]]:
    """
    이미지 쌍을 작업자 수만큼 연속 구간으로 나눕니다.

    구간 크기는 ceil(쌍 수 / 작업자 수)이며, 빈 구간은 만들지 않습니다.

    Args:
        pairs: 전체 이미지 쌍
        num_workers: 작업자 수

    Returns:
        List[List[ImagePair]]: 작업자별 이미지 쌍
    """
    if not pairs:
        return []
    num_workers = max(1, min(num_workers, len(pairs)))
    chunk = math.ceil(len(pairs) / num_workers)
    return [list(pairs[i:i + chunk]) for i in range(0, len(pairs), chunk)]


class MatchMatrix:
    """
    이미지 쌍별 매칭 행렬

    한 번 계산한 뒤에는 replace()로 기하학적 검증을 통과한
    부분집합으로 교체하는 것만 허용합니다 (매칭 추가 불가).

    Example:
        >>> matrix = MatchMatrix(len(features))
        >>> matrix.compute(features, FeatureMatcher(), num_workers=4)
        >>> matches = matrix.get(0, 1)
    """

    def __init__(self, num_images: int):
        self.num_images = num_images
        self._entries: Dict[ImagePair, List[cv2.DMatch]] = {}
        self._log_lock = threading.Lock()

    def pairs(self) -> List[ImagePair]:
        """모든 이미지 쌍 (행 우선 순서)"""
        return [ImagePair(i, j)
                for i in range(self.num_images - 1)
                for j in range(i + 1, self.num_images)]

    def compute(self, features: Sequence[FeatureSet],
                matcher: FeatureMatcher,
                num_workers: Optional[int] = None,
                log: Optional[ProgressCallback] = None) -> None:
        """
        모든 이미지 쌍의 매칭을 계산합니다.

        반환 시점에는 모든 작업 스레드가 종료되어 있습니다.
        작업 스레드에서 발생한 예외는 그대로 다시 발생합니다.

        Args:
            features: 이미지별 특징점 (인덱스 = 이미지 번호)
            matcher: 쌍 매처
            num_workers: 작업 스레드 수 (None이면 하드웨어 스레드 수 - 1)
            log: 진행 상황 콜백 (작업 스레드에서 잠금을 잡고 호출됨)
        """
        if len(features) != self.num_images:
            raise ValueError(f"특징점 집합 수({len(features)})가 "
                             f"이미지 수({self.num_images})와 다릅니다.")

        pairs = self.pairs()
        if num_workers is None:
            num_workers = default_num_workers()
        partitions = partition_pairs(pairs, num_workers)

        self._log(log, f"매칭 시작: {len(pairs)}개 쌍, 작업 스레드 {len(partitions)}개 "
                       f"(스레드당 최대 {len(partitions[0]) if partitions else 0}개 쌍)")

        # 각 작업자는 자기 구간의 항목에만 기록
        results: List[Dict[ImagePair, List[cv2.DMatch]]] = [{} for _ in partitions]

        def work(worker_id: int) -> None:
            own = results[worker_id]
            for pair in partitions[worker_id]:
                own[pair] = matcher.match(features[pair.left], features[pair.right])
                self._log(log, f"  스레드 {worker_id} -> 이미지 {pair.left}-{pair.right}: "
                               f"{len(own[pair])}개 매칭")

        if partitions:
            with ThreadPoolExecutor(max_workers=len(partitions)) as executor:
                futures = [executor.submit(work, worker_id)
                           for worker_id in range(len(partitions))]
                for future in futures:
                    future.result()

        self._entries = {}
        for own in results:
            self._entries.update(own)

    def _log(self, log: Optional[ProgressCallback], message: str) -> None:
        if log is None:
            return
        with self._log_lock:
            log(message)

    def get(self, a: int, b: int) -> List[cv2.DMatch]:
        """
        (min(a, b), max(a, b)) 쌍의 매칭을 반환합니다.

        queryIdx는 항상 작은 인덱스 이미지를 가리킵니다.
        """
        return self._entries.get(ImagePair.of(a, b), [])

    def replace(self, a: int, b: int, pruned: List[cv2.DMatch]) -> None:
        """
        쌍의 매칭을 검증된 부분집합으로 교체합니다.

        Raises:
            ValueError: pruned에 기존 항목에 없는 매칭이 있는 경우
        """
        pair = ImagePair.of(a, b)
        current = {(m.queryIdx, m.trainIdx) for m in self._entries.get(pair, [])}
        for m in pruned:
            if (m.queryIdx, m.trainIdx) not in current:
                raise ValueError(f"이미지 {pair.left}-{pair.right}: 매칭을 추가할 수 없습니다 "
                                 f"({m.queryIdx}, {m.trainIdx})")
        self._entries[pair] = list(pruned)

    def items(self) -> Iterator[Tuple[ImagePair, List[cv2.DMatch]]]:
        for pair in self.pairs():
            yield pair, self.get(pair.left, pair.right)

    def __len__(self) -> int:
        return len(self._entries)
