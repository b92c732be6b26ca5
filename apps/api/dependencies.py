"""
FastAPI dependencies for the categorization engine

Routers depend on these instead of the factory so tests can swap in
in-memory engines with app.dependency_overrides.
"""
from ledgerlens.common.config import get_settings
from ledgerlens.domain.categorization.categorization_service import CategorizationService
from ledgerlens.domain.categorization.config import CategorizerConfig
from ledgerlens.domain.categorization.factory import get_categorization_service, get_learning_loop
from ledgerlens.domain.categorization.learning_loop import LearningLoop


def get_service() -> CategorizationService:
    return get_categorization_service()


def get_loop() -> LearningLoop:
    return get_learning_loop()


def get_default_config() -> CategorizerConfig:
    return CategorizerConfig.from_settings(get_settings())
