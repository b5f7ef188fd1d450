from prometheus_fastapi_instrumentator import Instrumentator


def build_instrumentator() -> Instrumentator:
    return Instrumentator(
        should_ignore_untemplated=True,      # /orders/123 -> /orders/{order_id}
        excluded_handlers=["/metrics"],
        should_group_status_codes=False,
    )
