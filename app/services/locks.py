"""
进程内互斥锁 - 按团体 ID / 房间 ID 串行化写操作

加锁顺序固定：先团体锁，再按房间 ID 升序取房间锁。
条目只在有线程持有或等待时存在，最后一个持有者释放后即删除。
"""
import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterator, Optional


class KeyedLockRegistry:
    """按整数 key 分配的进程内互斥锁"""

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._holders: Dict[int, int] = {}
        self._guard = threading.Lock()

    def __contains__(self, key: int) -> bool:
        with self._guard:
            return key in self._locks

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, *keys: Optional[int]) -> Iterator[None]:
        """按 key 升序依次加锁，退出时逆序释放；None 被忽略"""
        ordered = sorted({k for k in keys if k is not None})
        with self._guard:
            locks = []
            for key in ordered:
                if key not in self._locks:
                    self._locks[key] = threading.Lock()
                    self._holders[key] = 0
                self._holders[key] += 1
                locks.append(self._locks[key])
        try:
            with ExitStack() as stack:
                for lock in locks:
                    stack.enter_context(lock)
                yield
        finally:
            with self._guard:
                for key in ordered:
                    self._holders[key] -= 1
                    if not self._holders[key]:
                        del self._holders[key]
                        del self._locks[key]


group_locks = KeyedLockRegistry()
room_locks = KeyedLockRegistry()
