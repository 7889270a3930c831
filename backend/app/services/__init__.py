"""Services for the prompt workbench."""

from app.services.cleanup_queue import ResponseCleanupQueue, get_cleanup_queue
from app.services.execution_tracker import ExecutionTracker, get_tracker
from app.services.family_threads import FamilyThreadResolver, family_threads
from app.services.model_resolver import ModelResolver, model_resolver
from app.services.provider_adapter import ProviderAdapter, provider_adapter
from app.services.rate_limiter import RateLimiter
from app.services.reconciler import ResponseReconciler, get_reconciler
from app.services.run_orchestrator import LoadedContext, RunOrchestrator, get_orchestrator
from app.services.template_engine import TemplateEngine, apply_template, template_engine
from app.services.webhook_verifier import WebhookVerifier, get_webhook_verifier

__all__ = [
    "ExecutionTracker",
    "get_tracker",
    "ResponseCleanupQueue",
    "get_cleanup_queue",
    "FamilyThreadResolver",
    "family_threads",
    "ModelResolver",
    "model_resolver",
    "ProviderAdapter",
    "provider_adapter",
    "RateLimiter",
    "ResponseReconciler",
    "get_reconciler",
    "RunOrchestrator",
    "LoadedContext",
    "get_orchestrator",
    "TemplateEngine",
    "apply_template",
    "template_engine",
    "WebhookVerifier",
    "get_webhook_verifier",
]
