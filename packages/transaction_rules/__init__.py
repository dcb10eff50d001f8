"""Public interface for the ``transaction_rules`` package.

Symbol re-exports only; see :mod:`transaction_rules.api` for the entry points
and :mod:`transaction_rules.pipeline` for how an import runs.
"""

from .api import (
    as_rule_source,
    categorize_transactions,
    check_rules,
    import_file,
    open_sql_store,
    rerun_rules,
    start_import,
)
from .compiler import RulePlan, compile_rules
from .config import ImportSettings
from .engine import EngineResult, RuleEngine
from .errors import (
    ImportCancelled,
    MalformedRowError,
    PersistenceFailure,
    RuleExecutionFailure,
    RuleValidationError,
    SourceFormatError,
    TransactionRulesError,
    UnsupportedEncodingError,
)
from .ingest.profiles import BankProfile, get_profile, list_profiles
from .models import (
    Action,
    ActionKind,
    Combinator,
    Comparator,
    Condition,
    ConditionGroup,
    DateRange,
    ImportBatch,
    ImportStatus,
    ProgressEvent,
    Rule,
    RuleField,
    Transaction,
    TransactionType,
)
from .pipeline import ImportHandle, ImportPipeline, RerunResult
from .stores import InMemoryRecordStore, InMemoryRuleSource, JsonRuleSource

__all__ = [
    # API
    "as_rule_source",
    "categorize_transactions",
    "check_rules",
    "import_file",
    "open_sql_store",
    "rerun_rules",
    "start_import",
    # Pipeline and engine
    "ImportHandle",
    "ImportPipeline",
    "ImportSettings",
    "RerunResult",
    "RuleEngine",
    "EngineResult",
    "RulePlan",
    "compile_rules",
    # Profiles and stores
    "BankProfile",
    "get_profile",
    "list_profiles",
    "InMemoryRecordStore",
    "InMemoryRuleSource",
    "JsonRuleSource",
    # Models
    "Action",
    "ActionKind",
    "Combinator",
    "Comparator",
    "Condition",
    "ConditionGroup",
    "DateRange",
    "ImportBatch",
    "ImportStatus",
    "ProgressEvent",
    "Rule",
    "RuleField",
    "Transaction",
    "TransactionType",
    # Errors
    "ImportCancelled",
    "MalformedRowError",
    "PersistenceFailure",
    "RuleExecutionFailure",
    "RuleValidationError",
    "SourceFormatError",
    "TransactionRulesError",
    "UnsupportedEncodingError",
]
