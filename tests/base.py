import os
import time
import unittest
import uuid
from datetime import datetime, timedelta, timezone

# Ensure settings can be initialized in test environments
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crudkit.core.deps import get_token_verifier
from crudkit.core.security import (
    AuthConfig,
    IssuerConfig,
    KeySetUnavailableError,
    TokenVerifier,
    create_jwt,
    issue_subscription_token,
)
from crudkit.db.session import get_db
from crudkit.main import create_app
from crudkit.models.entity import (
    AccessPermission,
    CrudEntity,
    EndpointVerb,
    EntityConfig,
    EntityRegistry,
    InputPayload,
    ObjectPermission,
    QueryFilter,
    VerbConfig,
)
from crudkit.models.fields import KeyValueModel

AUDIENCE = "https://api.example.test"
USER_ISSUER = "https://users.example.test"
ADMIN_ISSUER = "https://admin.example.test/"
SUBSCRIPTION_ISSUER = "https://billing.example.test"
SUBSCRIPTION_SECRET = "test-subscription-secret"
KEY_ID = "test-key-1"

USER_A = "google-oauth2|106581763187164492987"
USER_B = "facebook|3626400950912107"
ADMIN_PERMISSION = "read:admin"

PEOPLE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS people (
        id CHAR(32) PRIMARY KEY,
        name VARCHAR(50) NOT NULL,
        age INTEGER NOT NULL,
        date_created TIMESTAMP NOT NULL,
        status VARCHAR(50) NOT NULL,
        user_id VARCHAR(50) NOT NULL
    );
"""


class Person(KeyValueModel):
    id: uuid.UUID
    name: str
    age: int
    date_created: datetime
    status: str
    user_id: str


class PersonInput(InputPayload):
    name: str
    age: int

    def verify(self) -> bool:
        return 0 < self.age < 100 and 0 < len(self.name) < 50

    def materialize(self, owner_id: str | None) -> Person:
        return Person(
            id=uuid.uuid4(),
            name=self.name,
            age=self.age,
            date_created=datetime.now(timezone.utc),
            status="active",
            user_id=owner_id or "nobody",
        )


class PersonFilter(QueryFilter):
    id: uuid.UUID | None = None
    name: str | None = None
    age: int | None = None
    age_gt: int | None = None
    age_lt: int | None = None
    age_ge: int | None = None
    age_le: int | None = None
    status: str | None = None
    date_created_gt: datetime | None = None
    date_created_lt: datetime | None = None


def people_config(**verbs: VerbConfig) -> EntityConfig:
    return EntityConfig(
        table_name="people",
        endpoint_name="people",
        schema=PEOPLE_SCHEMA,
        verbs={EndpointVerb[name]: verb for name, verb in verbs.items()},
    )


def people_entity(config: EntityConfig, entity_class: type[CrudEntity] = CrudEntity) -> CrudEntity:
    return entity_class(config, entity_model=Person, input_model=PersonInput, filter_model=PersonFilter)


_SIGNING_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_OTHER_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _private_pem(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def public_jwk(key=_SIGNING_KEY, kid: str = KEY_ID) -> dict:
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    data = jwk.construct(public_pem, algorithm="RS256").to_dict()
    data["kid"] = kid
    return data


def rs256_token(
    sub: str,
    *,
    issuer: str = USER_ISSUER,
    audience: str = AUDIENCE,
    permissions: list[str] | None = None,
    kid: str = KEY_ID,
    key=_SIGNING_KEY,
    expires_in: int = 3600,
) -> str:
    now = int(time.time())
    claims = {
        "sub": sub,
        "iss": issuer,
        "aud": [audience, "https://users.example.test/userinfo"],
        "iat": now,
        "exp": now + expires_in,
        "scope": "openid profile email",
    }
    if permissions is not None:
        claims["permissions"] = permissions
    return jwt.encode(claims, _private_pem(key), algorithm="RS256", headers={"kid": kid})


def unknown_key_token(sub: str, **kwargs) -> str:
    return rs256_token(sub, key=_OTHER_KEY, **kwargs)


def bearer(token: str) -> str:
    return f"Bearer {token}"


def user_headers(sub: str = USER_A) -> dict[str, str]:
    return {"Authorization": bearer(rs256_token(sub))}


def admin_headers(sub: str = USER_A, permissions: list[str] | None = None) -> dict[str, str]:
    token = rs256_token(
        sub,
        issuer=ADMIN_ISSUER,
        permissions=[ADMIN_PERMISSION] if permissions is None else permissions,
    )
    return {"Authorization": bearer(token)}


AUTH_CONFIG = AuthConfig(
    user=IssuerConfig(issuer=USER_ISSUER, audience=AUDIENCE),
    admin=IssuerConfig(issuer=ADMIN_ISSUER, audience=AUDIENCE),
    subscription=IssuerConfig(issuer=SUBSCRIPTION_ISSUER, audience=AUDIENCE, secret=SUBSCRIPTION_SECRET),
    admin_permission=ADMIN_PERMISSION,
)


def subscription_token(subject: str, tier: str = "pro") -> str:
    return issue_subscription_token(AUTH_CONFIG, subject=subject, subscription=tier, expires_delta=timedelta(hours=1))


class FakeKeySets:
    """Stands in for the identity providers' JWKS endpoints."""

    def __init__(self, keys_by_issuer: dict[str, list[dict]] | None = None):
        if keys_by_issuer is None:
            keys_by_issuer = {USER_ISSUER: [public_jwk()], ADMIN_ISSUER: [public_jwk()]}
        self.keys_by_url = {
            issuer.rstrip("/") + "/.well-known/jwks.json": keys for issuer, keys in keys_by_issuer.items()
        }
        self.calls: list[str] = []

    def __call__(self, url: str) -> list[dict]:
        self.calls.append(url)
        if url not in self.keys_by_url:
            raise KeySetUnavailableError(f"unreachable: {url}")
        return list(self.keys_by_url[url])


class CrudApiTestCase(unittest.TestCase):
    """Serves one entity from an in-memory SQLite database."""

    @classmethod
    def build_entity(cls) -> CrudEntity:
        return people_entity(people_config())

    @classmethod
    def setUpClass(cls):
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autocommit=False, autoflush=False)
        cls.registry = EntityRegistry([cls.build_entity()])
        cls.app = create_app(cls.registry)

    @classmethod
    def tearDownClass(cls):
        cls.engine.dispose()

    def setUp(self):
        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.key_sets = FakeKeySets()
        self.verifier = TokenVerifier(AUTH_CONFIG, fetch=self.key_sets)
        self.app.dependency_overrides[get_db] = override_get_db
        self.app.dependency_overrides[get_token_verifier] = lambda: self.verifier
        self.client = TestClient(self.app)

        for table_name in self.registry.table_names():
            response = self.client.post("/tableCommands/dropTable", json=table_name)
            self.assertEqual(response.status_code, 200)
        response = self.client.post("/tableCommands/initTables")
        self.assertEqual(response.status_code, 200)

    def tearDown(self):
        self.client.close()
        self.app.dependency_overrides.clear()

    def create_person(self, name: str = "John", age: int = 30, headers: dict | None = None) -> str:
        response = self.client.post("/restful/people", json={"name": name, "age": age}, headers=headers or {})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def list_people(self, query: str = "", headers: dict | None = None) -> list[dict]:
        response = self.client.get(f"/restful/people{query}", headers=headers or {})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()
