"""
Email package.

Modules:
- client: EmailClient for sending templated emails via the Communications Service API

Templates live in the Communications Service. Request handlers never send
email inline; they emit notifications (libs.common.notifications) that the
payments worker delivers through this client.
"""
