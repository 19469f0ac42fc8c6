"""
Test configuration and fixtures.

Provides:
- A fresh in-memory SQLite database per test
- Project/form/actor factories and XForm fixtures
- Client-side envelope encryption helpers
- HTTPX AsyncClient bound to the app with get_db overridden
"""
import base64
import hashlib
import os
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator, Generator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session, sessionmaker

# Fast keys for tests; must be set before settings load
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["KEY_DERIVATION_ITERATIONS"] = "1000"
os.environ["MANAGED_KEY_SIZE"] = "1024"

from formvault.core import crypto
from formvault.core.deps import get_db
from formvault.db.base import Base
from formvault.db.models import Actor, Form, Project
from formvault.db.session import build_engine
from formvault.main import app
from formvault.services import form_service


PASSPHRASE = "correct horse battery staple"


# =============================================================================
# XForm fixtures
# =============================================================================

SIMPLE_FORM = """<?xml version="1.0"?>
<h:html xmlns="http://www.w3.org/2002/xforms" xmlns:h="http://www.w3.org/1999/xhtml" xmlns:jr="http://openrosa.org/javarosa" xmlns:orx="http://openrosa.org/xforms">
  <h:head>
    <h:title>Simple</h:title>
    <model>
      <instance>
        <data id="simple" version="1">
          <meta><instanceID/></meta>
          <name/>
          <age/>
        </data>
      </instance>
      <bind nodeset="/data/meta/instanceID" type="string"/>
      <bind nodeset="/data/name" type="string"/>
      <bind nodeset="/data/age" type="int"/>
    </model>
  </h:head>
  <h:body>
    <input ref="/data/name"/>
    <input ref="/data/age"/>
  </h:body>
</h:html>"""

REPEAT_FORM = """<?xml version="1.0"?>
<h:html xmlns="http://www.w3.org/2002/xforms" xmlns:h="http://www.w3.org/1999/xhtml" xmlns:jr="http://openrosa.org/javarosa">
  <h:head>
    <h:title>Household</h:title>
    <model>
      <instance>
        <data id="household" version="2024">
          <meta><instanceID/></meta>
          <village/>
          <member jr:template="">
            <name/>
            <age/>
          </member>
          <photo/>
        </data>
      </instance>
      <bind nodeset="/data/meta/instanceID" type="string"/>
      <bind nodeset="/data/village" type="string"/>
      <bind nodeset="/data/member/name" type="string"/>
      <bind nodeset="/data/member/age" type="int"/>
      <bind nodeset="/data/photo" type="binary"/>
    </model>
  </h:head>
  <h:body>
    <input ref="/data/village"/>
    <repeat nodeset="/data/member">
      <input ref="/data/member/name"/>
      <input ref="/data/member/age"/>
    </repeat>
    <upload ref="/data/photo" mediatype="image/*"/>
  </h:body>
</h:html>"""


def _simple_submission(instance_id: str, name: str = "Alice", age: str = "30", version: str = "1") -> str:
    return (
        f'<data id="simple" version="{version}">'
        f"<meta><instanceID>{instance_id}</instanceID></meta>"
        f"<name>{name}</name><age>{age}</age></data>"
    )


def _household_submission(instance_id: str, members: list[tuple[str, str]], photo: str | None = None) -> str:
    rows = "".join(f"<member><name>{n}</name><age>{a}</age></member>" for n, a in members)
    photo_xml = f"<photo>{photo}</photo>" if photo else "<photo/>"
    return (
        f'<data id="household" version="2024">'
        f"<meta><instanceID>{instance_id}</instanceID></meta>"
        f"<village>Riverside</village>{rows}{photo_xml}</data>"
    )


# =============================================================================
# Client-side encryption
# =============================================================================

@dataclass
class EncryptedEnvelope:
    """An encrypted submission as a client would produce it."""

    envelope: str
    body: bytes
    body_name: str
    media: dict[str, bytes]


def _encrypt_submission(
    public_key: str,
    xml_form_id: str,
    version: str,
    plaintext: str,
    instance_id: str | None = None,
    media: dict[str, bytes] | None = None,
) -> EncryptedEnvelope:
    """Build an encrypted envelope plus its encrypted parts, media first and body last."""
    instance_id = instance_id or f"uuid:{uuid.uuid4()}"
    symmetric_key = crypto.generate_symmetric_key()
    media = media or {}

    encrypted_media: dict[str, bytes] = {}
    for index, (name, content) in enumerate(media.items()):
        encrypted_media[f"{name}.enc"] = crypto.encrypt_part(content, symmetric_key, instance_id, index)
    body_name = "submission.xml.enc"
    body = crypto.encrypt_part(plaintext.encode("utf-8"), symmetric_key, instance_id, len(media))

    files = "".join(f"<file>{name}</file>" for name in encrypted_media)
    signature = base64.b64encode(hashlib.md5(plaintext.encode("utf-8")).digest()).decode("ascii")
    envelope = (
        f'<data xmlns="http://opendatakit.org/submissions" id="{xml_form_id}" '
        f'version="{version}" encrypted="yes">'
        f"<base64EncryptedKey>{crypto.wrap_symmetric_key(public_key, symmetric_key)}</base64EncryptedKey>"
        f'<meta xmlns="http://openrosa.org/xforms"><instanceID>{instance_id}</instanceID></meta>'
        f"<media>{files}</media>"
        f"<encryptedXmlFile>{body_name}</encryptedXmlFile>"
        f"<base64EncryptedElementSignature>{signature}</base64EncryptedElementSignature>"
        f"</data>"
    )
    return EncryptedEnvelope(envelope=envelope, body=body, body_name=body_name, media=encrypted_media)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def engine():
    """A private in-memory database with the full schema."""
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture(scope="function")
def project(db: Session) -> Project:
    project = form_service.create_project(db, "Test Project")
    db.commit()
    return project


@pytest.fixture(scope="function")
def actor(db: Session) -> Actor:
    actor = Actor(display_name="Field Worker")
    db.add(actor)
    db.commit()
    return actor


@pytest.fixture(scope="function")
def simple_form(db: Session, project: Project) -> Form:
    form = form_service.create_form(db, project, SIMPLE_FORM)
    db.commit()
    return form


@pytest.fixture(scope="function")
def household_form(db: Session, project: Project) -> Form:
    form = form_service.create_form(db, project, REPEAT_FORM)
    db.commit()
    return form


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Builder Fixtures
# =============================================================================

@pytest.fixture
def passphrase() -> str:
    return PASSPHRASE


@pytest.fixture
def simple_form_xml() -> str:
    return SIMPLE_FORM


@pytest.fixture
def household_form_xml() -> str:
    return REPEAT_FORM


@pytest.fixture
def simple_submission():
    return _simple_submission


@pytest.fixture
def household_submission():
    return _household_submission


@pytest.fixture
def encrypt_submission():
    return _encrypt_submission
