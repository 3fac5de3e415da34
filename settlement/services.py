from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from settlement.core.config import Settings, get_settings
from settlement.core.errors import DocumentStoreError, NotificationError, PaymentGatewayError
from settlement.domain.orders import OrderAssembler
from settlement.domain.payouts import PayoutRouter
from settlement.domain.reconciler import Reconciler
from settlement.domain.sales_ledger import SalesLedger
from settlement.domain.stock import StockLedger
from settlement.integrations.mailer import LogNotifier, Notifier, ResendNotifier
from settlement.integrations.payments import FakePaymentGateway, PaymentGateway, StripeGateway
from settlement.ledger.firestore import FirestoreDocumentStore
from settlement.ledger.store import DocumentStore, SqlDocumentStore

logger = logging.getLogger(__name__)


def build_document_store(settings: Settings | None = None) -> DocumentStore:
    settings = settings or get_settings()
    if settings.document_backend == "firestore":
        return FirestoreDocumentStore(settings)
    if settings.document_backend != "sql":
        raise DocumentStoreError(f"unknown document backend: {settings.document_backend}")
    return SqlDocumentStore()


def build_payment_gateway(settings: Settings | None = None) -> PaymentGateway:
    settings = settings or get_settings()
    if settings.payment_backend == "stripe":
        try:
            return StripeGateway(settings)
        except PaymentGatewayError as exc:
            if settings.payment_strict:
                raise RuntimeError(f"stripe unavailable in strict mode: {exc}") from exc
            logger.warning("stripe unavailable, falling back to fake: %s", exc)
    return FakePaymentGateway()


def build_notifier(settings: Settings | None = None) -> Notifier:
    settings = settings or get_settings()
    if settings.notification_backend == "resend":
        try:
            return ResendNotifier(settings)
        except NotificationError as exc:
            logger.warning("resend unavailable, logging mail instead: %s", exc)
    return LogNotifier()


@dataclass
class SettlementServices:
    settings: Settings
    store: DocumentStore
    gateway: PaymentGateway
    notifier: Notifier
    stock: StockLedger
    router: PayoutRouter
    assembler: OrderAssembler
    reconciler: Reconciler
    sales_ledger: SalesLedger

    @classmethod
    def build(
        cls,
        store: DocumentStore | None = None,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
    ) -> "SettlementServices":
        settings = settings or get_settings()
        store = store or build_document_store(settings)
        gateway = gateway or build_payment_gateway(settings)
        notifier = notifier or build_notifier(settings)
        stock = StockLedger(store, settings)
        router = PayoutRouter(store, gateway, notifier, settings)
        sales_ledger = SalesLedger(store, router)
        return cls(
            settings=settings,
            store=store,
            gateway=gateway,
            notifier=notifier,
            stock=stock,
            router=router,
            assembler=OrderAssembler(store, stock, router, notifier, settings, sales_ledger),
            reconciler=Reconciler(store, gateway, router, notifier, settings, sales_ledger),
            sales_ledger=sales_ledger,
        )

    def for_identity(self, id_token: str | None) -> "SettlementServices":
        """Same collaborators, with the caller's identity token forwarded to the store."""
        store = self.store.bind_identity(id_token)
        if store is self.store:
            return self
        return SettlementServices.build(store=store, gateway=self.gateway, notifier=self.notifier, settings=self.settings)


@lru_cache(maxsize=1)
def get_services() -> SettlementServices:
    return SettlementServices.build()
