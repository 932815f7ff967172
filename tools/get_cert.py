#!/usr/bin/env python

from cryptography import x509
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from scripts.generate_cert import load_cluster_config
import argparse
import base64
import sys


def extract_cert_from_secret(core_api, namespace, secret_name):
    secret = core_api.read_namespaced_secret(secret_name, namespace)
    cert_data = (secret.data or {}).get('tls.crt')
    if cert_data is None:
        raise ValueError(f"Certificate data not found in secret '{secret_name}'.")
    return x509.load_pem_x509_certificate(base64.b64decode(cert_data))


def certificate_dns_names(cert):
    try:
        san_extension = cert.extensions.get_extension_for_oid(x509.ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
    except x509.ExtensionNotFound:
        return []
    return san_extension.value.get_values_for_type(x509.DNSName)


def print_certificate(cert):
    print("Certificate Details:")
    print(f"Subject: {cert.subject.rfc4514_string()}")
    common_names = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    if common_names:
        print(f"Common Name: {common_names[0].value}")

    names = certificate_dns_names(cert)
    if names:
        print("Subject Alternative Names:")
        for name in names:
            print(f"  DNS:{name}")
    else:
        print("No Subject Alternative Name extension.")

    print(f"Issuer: {cert.issuer.rfc4514_string()}")
    print(f"Validity: {cert.not_valid_before_utc} - {cert.not_valid_after_utc}")
    print(f"Serial Number: {cert.serial_number}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Show the TLS certificate stored in a webhook secret.")
    parser.add_argument("namespace", type=str, help="The namespace where the secret is located.")
    parser.add_argument("secret_name", type=str, help="The name of the secret.")
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file (defaults to the standard lookup, then in-cluster config).")
    parser.add_argument("--context", help="Kubeconfig context to use.")
    parser.add_argument("--expect-service", help="Fail unless the certificate covers this service's DNS names.")
    args = parser.parse_args(argv)

    try:
        load_cluster_config(args.kubeconfig, args.context)
        cert = extract_cert_from_secret(client.CoreV1Api(), args.namespace, args.secret_name)
    except (ConfigException, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except ApiException as e:
        print(f"ERROR: Kubernetes API call failed: {e.status} {e.reason}", file=sys.stderr)
        return 1

    print_certificate(cert)

    if args.expect_service:
        service = args.expect_service
        expected = [service, f"{service}.{args.namespace}", f"{service}.{args.namespace}.svc"]
        missing = [name for name in expected if name not in certificate_dns_names(cert)]
        if missing:
            print(f"ERROR: certificate does not cover {', '.join(missing)}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
