"""Scheduled email delivery service for maritime agencies.

This package provides the delivery pipeline behind PortMail, where
operators schedule ship emails built from port templates and a periodic
sweep sends them when they fall due:

- Job store for scheduled emails with delivery state and retry bookkeeping
- Due-job dispatcher with per-job compare-and-swap claiming
- Attachment resolution from a local or HTTP file store
- SMTP delivery with connection reuse
- FastAPI REST API, a click CLI and a development self-trigger
- Prometheus metrics for monitoring

Example:
    Running one sweep from code::

        from portmail.config_loader import load_config
        from portmail.core import PortMailService

        service = PortMailService(load_config())
        await service.init()
        report = await service.run_sweep()

Authors:
    Softwell S.r.l.
"""

__version__ = "0.3.0"
