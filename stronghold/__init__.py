"""Stronghold notification dispatch service.

Two periodic scanners detect expiring memberships and upcoming
appointments and publish reminder emails to a durable RabbitMQ queue.
A separate delivery worker consumes that queue and sends the emails
over SMTP with manual acknowledgement.
"""
