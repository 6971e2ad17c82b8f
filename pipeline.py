import logging

from audit_log import AuditLogStore, StorageUnavailable
from rules import RequestAttributes, RuleEvaluator, Verdict

logger = logging.getLogger("gatekeeper.pipeline")


class ClassificationPipeline:
    """
    Evaluate once, log every denial, return the verdict untouched.

    A failed audit write degrades observability only: the request stays denied.
    """

    def __init__(self, evaluator: RuleEvaluator, audit_store: AuditLogStore):
        self.evaluator = evaluator
        self.audit_store = audit_store
        self.storage_failures = 0

    async def handle(self, attrs: RequestAttributes) -> Verdict:
        verdict = self.evaluator.evaluate(attrs)

        if not verdict.denied:
            return verdict

        record = self.audit_store.build_record(attrs, verdict)
        try:
            await self.audit_store.put(record)
        except StorageUnavailable as e:
            self.storage_failures += 1
            logger.error(
                f"Audit write failed, denial not logged (rule={verdict.rule}, ip={attrs.source_ip}): {e}"
            )

        return verdict
