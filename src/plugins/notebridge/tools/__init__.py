"""通用工具：外部调用限流、相册聚合。"""

from .media_group import MediaGroupAggregator
from .rate_limiter import SharedSlidingWindowRateLimiter, SlidingWindowRateLimiter

__all__ = ["MediaGroupAggregator", "SharedSlidingWindowRateLimiter", "SlidingWindowRateLimiter"]
