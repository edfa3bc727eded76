from __future__ import annotations

from collections.abc import Callable

from tenacity import RetryCallState

type BeforeSleepCallback = Callable[[RetryCallState], None]
