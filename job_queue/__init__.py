"""
Outbound Queue — drains the durable WhatsApp send queue.

- Fixed backoff table between retries
- Provider outcomes classified into success / rate limited / permanent / transient
- One bounded batch per invocation, triggered by cron or the API
"""
