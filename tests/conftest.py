"""Shared pytest fixtures for the webhook certificate scripts.

- core_api / certs_api: MagicMock stand-ins for CoreV1Api and
  CertificatesV1Api, preset for an empty cluster
- sign_csr: signs a PEM request with a throwaway CA, the way the cluster
  signer would
"""

import base64
import datetime
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from kubernetes.client.rest import ApiException


def api_error(status, reason="Error"):
    return ApiException(status=status, reason=reason)


@pytest.fixture(scope="session")
def ca_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def sign_csr(ca_key):
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test-cluster-ca")])

    def _sign(csr_pem):
        csr = x509.load_pem_x509_csr(csr_pem)
        now = datetime.datetime.now(datetime.timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_name)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=1))
        )
        for extension in csr.extensions:
            builder = builder.add_extension(extension.value, extension.critical)
        return builder.sign(ca_key, hashes.SHA256()).public_bytes(serialization.Encoding.PEM)

    return _sign


@pytest.fixture
def core_api():
    """CoreV1Api with no secrets and no namespaces."""
    api = MagicMock()
    api.read_namespaced_secret.side_effect = api_error(404, "Not Found")
    api.read_namespace.side_effect = api_error(404, "Not Found")
    return api


@pytest.fixture
def certs_api(sign_csr):
    """CertificatesV1Api whose signer issues a certificate on approval."""
    api = MagicMock()
    store = {}

    def create(body):
        store[body.metadata.name] = body
        return body

    def read(name):
        if name not in store:
            raise api_error(404, "Not Found")
        return store[name]

    def approve(name, body):
        request = base64.b64decode(body.spec.request)
        body.status.certificate = base64.b64encode(sign_csr(request)).decode("utf-8")
        store[name] = body
        return body

    api.delete_certificate_signing_request.side_effect = api_error(404, "Not Found")
    api.create_certificate_signing_request.side_effect = create
    api.read_certificate_signing_request.side_effect = read
    api.replace_certificate_signing_request_approval.side_effect = approve
    api.store = store
    return api
