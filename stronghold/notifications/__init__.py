"""Notification dispatch pipeline (scanners, durable queue, delivery worker).

Producers (the due-item scanners) and the delivery worker only share the
RabbitMQ queue; they run in separate processes and never call each other.
"""
