from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Union

from billing.config import Settings, configure_logging, load_settings
from billing.services.catalog_service import CatalogService
from billing.services.company_service import CompanyService
from billing.services.customer_service import CustomerService
from billing.services.document_service import DocumentService
from billing.services.numbering_service import NumberingService
from billing.services.workflow_service import WorkflowService
from billing.storage.repo import JsonStore

logger = logging.getLogger(__name__)


class BillingApp:
    """All services wired on one store, the way a caller uses them."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = JsonStore(
            settings.data_dir,
            backup_enabled=settings.backup_enabled,
            backup_keep=settings.backup_keep,
        )
        self.numbering = NumberingService(self.store, settings.numbering)
        self.companies = CompanyService(self.store, self.numbering, settings.company_defaults)
        self.documents = DocumentService(self.store, self.numbering)
        self.customers = CustomerService(self.store, self.documents)
        self.catalog = CatalogService(self.store)
        self.workflow = WorkflowService(self.documents)


def open_app(
    data_dir: Optional[Union[str, Path]] = None,
    *,
    setup_logging: bool = True,
    **overrides: Any,
) -> BillingApp:
    settings = load_settings(data_dir, **overrides)
    if setup_logging:
        configure_logging(settings.log_level)
    logger.info("Opening billing data in %s", settings.data_dir)
    return BillingApp(settings)
