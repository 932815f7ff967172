#!/usr/bin/env python

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives import serialization
import argparse
import base64
import datetime
import os
import stat
import sys
import textwrap
import threading
import time
import yaml

DEFAULT_SIGNER = "kubernetes.io/kubelet-serving"
CSR_USAGES = ["digital signature", "key encipherment", "server auth"]
CSR_GROUPS = ["system:authenticated"]


class CertificateError(Exception):
    """Base error for the certificate provisioning workflow."""


class CSRTimeoutError(CertificateError):
    pass


class CSRNotSignedError(CertificateError):
    pass


class OperationCancelled(CertificateError):
    pass


class UsageParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_arguments(argv=None):
    description = textwrap.dedent("""
    Generate a certificate for an admission webhook service.

    Uses the CertificateSigningRequest API to get a certificate signed by the
    cluster CA for the webhook service, then stores the server key and
    certificate in a secret. Requires permission to create and approve CSRs.
    See https://kubernetes.io/docs/tasks/tls/managing-tls-in-a-cluster for
    details.
    """)
    parser = UsageParser(description=description,
                         formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('--service', help='Service name of the webhook.')
    parser.add_argument('-n', '--namespace', help='Namespace where the webhook service and secret reside.')
    parser.add_argument('--secret', help='Secret name for the server certificate/key pair.')
    parser.add_argument('--kubeconfig', help='Path to a kubeconfig file (defaults to the standard lookup, then in-cluster config).')
    parser.add_argument('--context', help='Kubeconfig context to use.')
    parser.add_argument('--signer-name', default=DEFAULT_SIGNER, help=f'CSR signerName (default: {DEFAULT_SIGNER}).')
    parser.add_argument('--csr-timeout', type=float, default=60.0, help='Seconds to wait for the submitted CSR to become readable.')
    parser.add_argument('--sign-attempts', type=int, default=10, help='Times to check for the signed certificate after approval.')
    parser.add_argument('--poll-interval', type=float, default=1.0, help='Seconds between polls.')
    parser.add_argument('--output-dir', help='Also write the key, CSR and signed certificate to this directory.')
    parser.add_argument('--dry-run', action='store_true', help='Print the CSR resource instead of submitting it.')
    args = parser.parse_args(argv)

    for name in ('service', 'secret', 'namespace'):
        if not getattr(args, name):
            print(f"{name} argument is not provided.", file=sys.stderr)
            sys.exit(1)
    return args


def csr_name(service, namespace):
    return f"{service}.{namespace}"


def dns_names(service, namespace):
    return [service, f"{service}.{namespace}", f"{service}.{namespace}.svc"]


def csr_subject(service, namespace, signer_name):
    common_name = f"{service}.{namespace}.svc"
    if signer_name == DEFAULT_SIGNER:
        # kubelet-serving only signs node-shaped subjects
        return x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "system:nodes"),
            x509.NameAttribute(NameOID.COMMON_NAME, f"system:node:{common_name}"),
        ])
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def generate_key_and_csr(service, namespace, signer_name=DEFAULT_SIGNER):
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )

    builder = x509.CertificateSigningRequestBuilder().subject_name(
        csr_subject(service, namespace, signer_name))
    builder = builder.add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=False)
    builder = builder.add_extension(x509.KeyUsage(
        digital_signature=True,
        content_commitment=True,
        key_encipherment=True,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=False,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    ), critical=False)
    builder = builder.add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
    builder = builder.add_extension(x509.SubjectAlternativeName(
        [x509.DNSName(name) for name in dns_names(service, namespace)]), critical=False)
    csr = builder.sign(private_key, hashes.SHA256())

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key_pem, csr.public_bytes(serialization.Encoding.PEM)


def build_csr_object(name, csr_pem, signer_name=DEFAULT_SIGNER):
    return client.V1CertificateSigningRequest(
        api_version="certificates.k8s.io/v1",
        kind="CertificateSigningRequest",
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1CertificateSigningRequestSpec(
            groups=list(CSR_GROUPS),
            request=base64.b64encode(csr_pem).decode('utf-8'),
            signer_name=signer_name,
            usages=list(CSR_USAGES),
        )
    )


def load_cluster_config(kubeconfig=None, context=None):
    try:
        config.load_kube_config(config_file=kubeconfig, context=context)
    except ConfigException:
        if kubeconfig:
            raise
        config.load_incluster_config()


def secret_exists(core_api, name, namespace):
    try:
        core_api.read_namespaced_secret(name, namespace)
        return True
    except ApiException as e:
        if e.status == 404:
            return False
        raise


def ensure_namespace(core_api, namespace):
    try:
        core_api.read_namespace(namespace)
    except ApiException as e:
        if e.status != 404:
            raise
        core_api.create_namespace(client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace)))
        print(f"Namespace '{namespace}' created.")


def delete_stale_csr(certs_api, name):
    try:
        certs_api.delete_certificate_signing_request(name)
        print(f"Deleted previous CSR {name}.")
    except ApiException as e:
        if e.status != 404:
            raise


def submit_csr(certs_api, csr_object):
    api_response = certs_api.create_certificate_signing_request(csr_object)
    print(f"CSR submitted successfully: {api_response.metadata.name}")
    return api_response


def _pause(cancel, interval, name):
    if cancel.wait(interval):
        raise OperationCancelled(f"Cancelled while waiting on csr {name}.")


def wait_for_csr(certs_api, name, timeout=60.0, interval=1.0, cancel=None):
    """Poll until the CSR can be read back from the API server.

    Raises CSRTimeoutError once ``timeout`` seconds have passed and
    OperationCancelled as soon as ``cancel`` is set.
    """
    cancel = cancel or threading.Event()
    deadline = time.monotonic() + timeout
    while True:
        if cancel.is_set():
            raise OperationCancelled(f"Cancelled while waiting on csr {name}.")
        try:
            return certs_api.read_certificate_signing_request(name)
        except ApiException as e:
            last_error = e
        if time.monotonic() >= deadline:
            raise CSRTimeoutError(
                f"csr {name} was not readable after {timeout:g} seconds: "
                f"{last_error.status} {last_error.reason}")
        _pause(cancel, interval, name)


def approve_csr(certs_api, name):
    csr = certs_api.read_certificate_signing_request(name)
    conditions = csr.status.conditions if csr.status and csr.status.conditions else []
    if any(c.type == "Approved" and c.status == "True" for c in conditions):
        print(f"CSR {name} already approved.")
        return csr
    conditions.append(client.V1CertificateSigningRequestCondition(
        type="Approved",
        status="True",
        reason="WebhookCertApprove",
        message="Approved by generate-cert for admission webhook serving.",
        last_update_time=datetime.datetime.now(datetime.timezone.utc),
    ))
    if csr.status is None:
        csr.status = client.V1CertificateSigningRequestStatus()
    csr.status.conditions = conditions
    api_response = certs_api.replace_certificate_signing_request_approval(name, csr)
    print(f"CSR {name} approved.")
    return api_response


def wait_for_certificate(certs_api, name, attempts=10, interval=1.0, cancel=None):
    """Return the signed PEM certificate once the signer has attached it."""
    cancel = cancel or threading.Event()
    last_error = None
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            _pause(cancel, interval, name)
        try:
            csr = certs_api.read_certificate_signing_request(name)
        except ApiException as e:
            if e.status in (403, 404):
                raise
            last_error = e
            continue
        status = csr.status or client.V1CertificateSigningRequestStatus()
        if status.certificate:
            cert_pem = base64.b64decode(status.certificate)
            try:
                x509.load_pem_x509_certificate(cert_pem)
            except ValueError as e:
                raise CSRNotSignedError(f"csr {name} carries an unreadable certificate: {e}") from e
            print(f"Successfully retrieved signed certificate for CSR {name}.")
            return cert_pem
        for condition in status.conditions or []:
            if condition.type in ("Denied", "Failed") and condition.status == "True":
                raise CSRNotSignedError(
                    f"csr {name} was {condition.type.lower()}: {condition.reason}: {condition.message}")
    message = (f"After approving csr {name}, the signed certificate did not appear on the resource. "
               f"Giving up after {attempts} attempts.")
    if last_error is not None:
        message += f" Last API error: {last_error.status} {last_error.reason}"
    raise CSRNotSignedError(message)


def apply_secret(core_api, name, namespace, key_pem, cert_pem):
    secret = client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        type="Opaque",
        data={
            "tls.key": base64.b64encode(key_pem).decode('utf-8'),
            "tls.crt": base64.b64encode(cert_pem).decode('utf-8'),
        }
    )
    try:
        api_response = core_api.create_namespaced_secret(namespace, secret)
        print(f"Secret '{name}' created in namespace '{namespace}'.")
    except ApiException as e:
        if e.status != 409:
            raise
        api_response = core_api.replace_namespaced_secret(name, namespace, secret)
        print(f"Secret '{name}' updated in namespace '{namespace}'.")
    return api_response


def write_pki_file(directory, file_name, contents, private=False):
    os.makedirs(directory, exist_ok=True)
    file_path = os.path.join(directory, file_name)
    with open(file_path, "wb") as f:
        f.write(contents)
    if private:
        os.chmod(file_path, stat.S_IRUSR | stat.S_IWUSR)
    print(f"Wrote {file_path}")
    return file_path


def provision_certificate(core_api, certs_api, service, namespace, secret,
                          signer_name=DEFAULT_SIGNER, csr_timeout=60.0,
                          sign_attempts=10, poll_interval=1.0,
                          output_dir=None, cancel=None):
    """Make sure ``secret`` in ``namespace`` holds a cluster-signed serving cert.

    Returns False without touching anything when the secret already exists,
    True once a new key and certificate have been stored.
    """
    if secret_exists(core_api, secret, namespace):
        print(f"Secret {secret} already exists.")
        return False

    ensure_namespace(core_api, namespace)

    name = csr_name(service, namespace)
    key_pem, csr_pem = generate_key_and_csr(service, namespace, signer_name)
    print(f"Generated key and CSR for {', '.join(dns_names(service, namespace))}.")
    if output_dir:
        write_pki_file(output_dir, "server-key.pem", key_pem, private=True)
        write_pki_file(output_dir, "server.csr", csr_pem)

    delete_stale_csr(certs_api, name)
    submit_csr(certs_api, build_csr_object(name, csr_pem, signer_name))
    wait_for_csr(certs_api, name, timeout=csr_timeout, interval=poll_interval, cancel=cancel)
    approve_csr(certs_api, name)
    cert_pem = wait_for_certificate(certs_api, name, attempts=sign_attempts,
                                    interval=poll_interval, cancel=cancel)
    if output_dir:
        write_pki_file(output_dir, "server-cert.crt", cert_pem)

    apply_secret(core_api, secret, namespace, key_pem, cert_pem)
    return True


def print_csr_manifest(service, namespace, signer_name):
    _, csr_pem = generate_key_and_csr(service, namespace, signer_name)
    csr_object = build_csr_object(csr_name(service, namespace), csr_pem, signer_name)
    manifest = client.ApiClient().sanitize_for_serialization(csr_object)
    print(yaml.safe_dump(manifest, default_flow_style=False, sort_keys=False), end="")


def main(argv=None):
    args = parse_arguments(argv)

    if args.dry_run:
        print_csr_manifest(args.service, args.namespace, args.signer_name)
        return 0

    try:
        load_cluster_config(args.kubeconfig, args.context)
        provision_certificate(
            client.CoreV1Api(),
            client.CertificatesV1Api(),
            args.service,
            args.namespace,
            args.secret,
            signer_name=args.signer_name,
            csr_timeout=args.csr_timeout,
            sign_attempts=args.sign_attempts,
            poll_interval=args.poll_interval,
            output_dir=args.output_dir,
        )
    except ConfigException as e:
        print(f"ERROR: no usable cluster configuration: {e}", file=sys.stderr)
        return 1
    except CertificateError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except ApiException as e:
        print(f"ERROR: Kubernetes API call failed: {e.status} {e.reason}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("ERROR: interrupted", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
