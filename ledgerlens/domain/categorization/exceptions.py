"""
Error hierarchy for the categorization engine

Only configuration and integration failures escape the pipeline. Per-transaction
uncertainty is a result (needs_review), never an exception.
"""


class CategorizationError(Exception):
    """Base class for engine errors"""


class TaxonomyError(CategorizationError):
    """Taxonomy tree is malformed or a slug/id is unknown"""


class EmbeddingError(CategorizationError):
    """Base class for embedding service failures"""


class EmbeddingConfigurationError(EmbeddingError):
    """Embedding client is missing credentials or settings"""


class EmbeddingServiceError(EmbeddingError):
    """Embedding endpoint answered with a non-success HTTP status"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingFormatError(EmbeddingError):
    """Embedding payload did not match the expected contract"""


class EmbeddingDimensionError(EmbeddingFormatError):
    """Embedding vector has the wrong number of dimensions"""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected {expected}-dimensional embedding, got {actual}")
        self.expected = expected
        self.actual = actual


class LLMResponseError(CategorizationError):
    """Generative model output could not be parsed"""


class RuleGovernanceError(CategorizationError):
    """A rule lifecycle operation would break the rule-set invariants"""


class CanaryTestError(RuleGovernanceError):
    """Canary evaluation could not be performed"""


class ConcurrentRuleUpdateError(RuleGovernanceError):
    """Another operation changed the rule's active flag first"""


class NotFoundError(CategorizationError):
    """Referenced rule version or oscillation does not exist"""
