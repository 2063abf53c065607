ORDER_STATUS_IN_PROGRESS = "in_progress"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = {ORDER_STATUS_IN_PROGRESS, ORDER_STATUS_COMPLETED, ORDER_STATUS_CANCELLED}
