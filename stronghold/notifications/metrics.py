from prometheus_client import Counter


scanner_cycles_total = Counter(
    "notification_scanner_cycles_total",
    "Total scan cycles started",
    ["scanner"],
)

scanner_cycle_failures_total = Counter(
    "notification_scanner_cycle_failures_total",
    "Scan cycles aborted by an unhandled error",
    ["scanner"],
)

scanner_published_total = Counter(
    "notification_scanner_published_total",
    "Reminder messages published to the email queue",
    ["scanner"],
)

scanner_duplicates_skipped_total = Counter(
    "notification_scanner_duplicates_skipped_total",
    "Matched reminders skipped because the ledger already has them",
    ["scanner"],
)

scanner_item_failures_total = Counter(
    "notification_scanner_item_failures_total",
    "Matched reminders that failed to build or publish",
    ["scanner"],
)

worker_delivered_total = Counter(
    "notification_worker_delivered_total",
    "Emails sent and acknowledged",
)

worker_retried_total = Counter(
    "notification_worker_retried_total",
    "Messages sent back to the queue after a transient failure",
)

worker_dead_lettered_total = Counter(
    "notification_worker_dead_lettered_total",
    "Messages moved to the failed queue",
    ["reason"],
)

worker_malformed_total = Counter(
    "notification_worker_malformed_total",
    "Payloads dropped because they could not be parsed",
)

broker_connect_attempts_total = Counter(
    "notification_broker_connect_attempts_total",
    "Broker connection attempts made by the worker",
)

broker_connect_failures_total = Counter(
    "notification_broker_connect_failures_total",
    "Broker connection attempts that failed",
)
