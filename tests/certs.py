"""
Key and certificate factories shared by the test modules.
"""
from datetime import datetime, timezone, timedelta

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID


def generate_rsa_key(key_size=2048):
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
        backend=default_backend()
    )


def generate_ec_key():
    return ec.generate_private_key(ec.SECP256R1(), default_backend())


def build_certificate(common_name, public_key, signing_key, issuer_name=None, ca=False, dns_names=None):
    """Create a certificate; self-signed unless issuer_name is given."""
    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)
    builder = x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuer_name or subject
    ).public_key(
        public_key
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - timedelta(days=1)
    ).not_valid_after(
        now + timedelta(days=365)
    ).add_extension(
        x509.BasicConstraints(ca=ca, path_length=None),
        critical=True
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False
        )
    return builder.sign(signing_key, hashes.SHA256(), default_backend())


def cert_to_pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def key_to_pem(key, password=None):
    if password:
        encryption = serialization.BestAvailableEncryption(password.encode())
    else:
        encryption = serialization.NoEncryption()
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption
    ).decode()


class CertificateChain:
    """Root CA -> intermediate CA -> leaf, plus an unrelated self-signed pair."""

    def __init__(self):
        self.root_key = generate_rsa_key()
        self.root_cert = build_certificate("Test Root CA", self.root_key.public_key(), self.root_key, ca=True)

        self.intermediate_key = generate_rsa_key()
        self.intermediate_cert = build_certificate(
            "Test Intermediate CA", self.intermediate_key.public_key(), self.root_key,
            issuer_name=self.root_cert.subject, ca=True
        )

        self.leaf_key = generate_rsa_key()
        self.leaf_cert = build_certificate(
            "leaf.example.com", self.leaf_key.public_key(), self.intermediate_key,
            issuer_name=self.intermediate_cert.subject, dns_names=["leaf.example.com", "www.example.com"]
        )

        self.self_signed_key = generate_rsa_key()
        self.self_signed_cert = build_certificate(
            "self-signed.example.com", self.self_signed_key.public_key(), self.self_signed_key
        )

        self.root_pem = cert_to_pem(self.root_cert)
        self.intermediate_pem = cert_to_pem(self.intermediate_cert)
        self.leaf_pem = cert_to_pem(self.leaf_cert)
        self.leaf_key_pem = key_to_pem(self.leaf_key)
        self.self_signed_pem = cert_to_pem(self.self_signed_cert)
        self.self_signed_key_pem = key_to_pem(self.self_signed_key)
        self.ca_bundle = self.intermediate_pem + self.root_pem


_chain = None


def shared_chain():
    """RSA key generation is slow, so every test module reuses one chain."""
    global _chain
    if _chain is None:
        _chain = CertificateChain()
    return _chain
