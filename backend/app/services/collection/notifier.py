"""
Collection Notifier

Outbound notifications used by the collection engine:
- "case finished" message to the creditor
- debtor notices (email / letter) sent by step actions
- case file handover to the bailiff

Delivery itself belongs to the mail/print integration. The default notifier
only writes the dispatch to the log, which is what local runs and the
internal scheduler use when no delivery backend is wired in.
"""
import logging

from ...models.db_models import CreditCaseDB


logger = logging.getLogger(__name__)


class CollectionNotifier:
    """
    Interface for outbound collection notifications.

    Calls are synchronous. Transport failures are raised, never swallowed.
    """

    def send_case_finished(self, case: CreditCaseDB) -> None:
        raise NotImplementedError

    def send_debtor_notice(self, case: CreditCaseDB, channel: str, template: str = None) -> bool:
        raise NotImplementedError

    def send_bailiff_transfer(self, case: CreditCaseDB) -> bool:
        raise NotImplementedError


class LoggingNotifier(CollectionNotifier):
    """Notifier that records every dispatch in the application log."""

    def send_case_finished(self, case: CreditCaseDB) -> None:
        logger.info(f"Case finished notice for case {case.id} queued for creditor")

    def send_debtor_notice(self, case: CreditCaseDB, channel: str, template: str = None) -> bool:
        logger.info(f"Debtor notice '{template or 'default'}' for case {case.id} queued via {channel}")
        return True

    def send_bailiff_transfer(self, case: CreditCaseDB) -> bool:
        logger.info(f"Case {case.id} handed over to bailiff {case.bailiff_id}")
        return True
