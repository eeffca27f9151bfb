"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from examfunnel.config import Settings  # noqa: E402
from examfunnel.core.models import GuideItem, Question, QuestionType  # noqa: E402
from examfunnel.quiz.providers import CachedSet  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (touch SQLite on disk)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "learning" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(autouse=True)
def setup_logging():
    """Route loguru output to stderr at DEBUG for the duration of a test."""
    from loguru import logger

    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG",
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    )

    yield

    logger.remove()


@pytest.fixture
def log_messages():
    """Collect formatted loguru messages emitted during a test."""
    from loguru import logger

    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message)), level="DEBUG", format="{level} {message}")
    yield messages
    logger.remove(handler_id)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and the user's home directory."""
    return Settings(
        _env_file=None,
        provider_timeout_seconds=0.5,
        state_db_path=tmp_path / "state.db",
    )


def make_question(
    qid: str,
    stem: str,
    concepts: list[str] | None = None,
    options: list[str] | None = None,
    correct: str | None = None,
    **extra,
) -> Question:
    """Build a valid multiple-choice question."""
    options = options or [f"{stem} option 1", f"{stem} option 2", f"{stem} option 3", f"{stem} option 4"]
    return Question(
        id=qid,
        type=QuestionType.MULTIPLE_CHOICE,
        stem=stem,
        options=options,
        correct_answer=correct or options[0],
        explanation="",
        concepts=concepts or [],
        **extra,
    )


@pytest.fixture
def sample_question():
    """Provide a sample question with a Choice Analysis explanation."""
    return Question(
        id="argatroban-001",
        type=QuestionType.MULTIPLE_CHOICE,
        stem="A patient with HIT needs anticoagulation. Which drug is most appropriate?",
        options=["A. Heparin", "B. Argatroban", "C. Warfarin", "D. Aspirin"],
        correct_answer="A",
        explanation=(
            "Direct thrombin inhibitors are preferred in HIT.\n\n"
            "**Choice Analysis:**\n"
            "| Option | Rationale |\n"
            "| --- | --- |\n"
            "| Heparin | Incorrect - causes HIT |\n"
            "| Argatroban | Correct - direct thrombin inhibitor |\n"
            "| Warfarin | Incorrect - skin necrosis risk acutely |\n"
            "| Aspirin | Incorrect - antiplatelet only |\n"
        ),
        concepts=["Heparin-induced thrombocytopenia"],
    )


@pytest.fixture
def respiratory_guide():
    """Guide items for a small pulmonary study guide."""
    return [
        GuideItem(id="pulm-1", title="Pneumonia", content="Community-acquired pneumonia and its pathogens."),
        GuideItem(id="pulm-2", title="Asthma", content="Reversible airway obstruction and its treatment."),
        GuideItem(id="pulm-3", title="COPD", content="Chronic bronchitis and emphysema."),
    ]


class FakeCurated:
    """In-memory gold bank keyed by module id."""

    def __init__(self, by_module: dict[str, list[Question]] | None = None):
        self.by_module = by_module or {}
        self.calls: list[str] = []

    async def get_approved(self, module_id: str) -> list[Question]:
        self.calls.append(module_id)
        return list(self.by_module.get(module_id, []))


class FakeCached:
    """In-memory cached sets keyed by guide id."""

    def __init__(self, by_guide: dict[str, CachedSet] | None = None):
        self.by_guide = by_guide or {}
        self.calls: list[str] = []

    async def get_cached(self, guide_id: str) -> CachedSet | None:
        self.calls.append(guide_id)
        return self.by_guide.get(guide_id)


class FakeGenerator:
    """
    Generation provider returning queued batches.

    Each call pops the next batch (or returns the last one again); every
    request is recorded for assertions.
    """

    def __init__(self, batches: list[list[dict]] | None = None):
        self.batches = batches or []
        self.requests: list[tuple[str, object]] = []

    async def generate(self, content, preferences):
        self.requests.append((content, preferences))
        if not self.batches:
            return []
        if len(self.batches) > 1:
            return self.batches.pop(0)
        return list(self.batches[0])


def raw_item(stem: str, concept: str, answer_index: int = 0) -> dict:
    """A well-formed generated payload in the provider's camelCase shape."""
    options = [f"{stem} choice {i}" for i in range(1, 5)]
    return {
        "questionText": stem,
        "options": options,
        "correctAnswer": options[answer_index],
        "explanation": "Because.",
        "studyConcepts": [concept],
        "type": "MULTIPLE_CHOICE",
    }


@pytest.fixture
def question_factory():
    """Factory for valid multiple-choice questions."""
    return make_question


@pytest.fixture
def raw_item_factory():
    """Factory for generated payloads."""
    return raw_item


@pytest.fixture
def fakes():
    """In-memory provider fakes."""
    return SimpleNamespace(Curated=FakeCurated, Cached=FakeCached, Generator=FakeGenerator)
