from city_scout.utils.retry import llm_call_with_retry

__all__ = ["llm_call_with_retry"]
