"""Test configuration."""
import json
import os
import random
from pathlib import Path
from typing import Generator

import pytest
from dotenv import load_dotenv
from faker import Faker

# Set test environment before any imports
os.environ["ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite://")

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)

# Import after environment setup
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from phonocoach.models.base import Base, init_db
from phonocoach.services.word_pool import WordPool

fake = Faker()

TEST_POOL = {
    "calibration": {
        "Kindergarten": [{"word": "cat", "ipa": ["kæt"]}, {"word": "dog", "ipa": ["dɔg", "dɑg"]}],
        "Primary-School": [{"word": "rabbit", "ipa": ["ræbɪt"]}, {"word": "window", "ipa": ["wɪndoʊ"]}],
        "Secondary-School": [{"word": "measure", "ipa": ["mɛʒər"]}, {"word": "whether", "ipa": ["wɛðər"]}],
        "Adult": [{"word": "squirrel", "ipa": ["skwɜrəl"]}, {"word": "phenomenon", "ipa": ["fənɑmənɑn"]}],
    },
    "practice": {
        "Kindergarten": [{"word": "hat", "ipa": ["hæt"]}, {"word": "pig", "ipa": ["pɪg"]}],
        "Primary-School": [
            {"word": "butter", "ipa": ["bʌtər"]},
            {"word": "pencil", "ipa": ["pɛnsəl"]},
            {"word": "yellow", "ipa": ["jɛloʊ"]},
        ],
        "Secondary-School": [{"word": "breathe", "ipa": ["brið"]}, {"word": "island", "ipa": ["aɪlənd"]}],
        "Adult": [{"word": "sixth", "ipa": ["sɪksθ"]}, {"word": "quinoa", "ipa": ["kinwɑ"]}],
    },
}


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory database shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine: Engine) -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def learner_id() -> str:
    return f"learner-{fake.uuid4()}"


@pytest.fixture
def pools_dir(tmp_path: Path) -> Path:
    """Word pool directory with a small English pool."""
    (tmp_path / "en.json").write_text(json.dumps(TEST_POOL, ensure_ascii=False), encoding="utf-8")
    return tmp_path


@pytest.fixture
def word_pool(pools_dir: Path) -> WordPool:
    return WordPool(pools_dir=pools_dir, rng=random.Random(7))
