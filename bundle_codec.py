"""
Certificate bundle codec.

Converts between PKCS#12 (PFX/P12) containers, PKCS#7 (P7B/P7C) certificate
bundles and PEM components, and checks whether a certificate and a private
key belong together.

Every function here is stateless: key material is only held for the
duration of one call and is never logged.
"""
import base64
import logging
import re
import textwrap
from dataclasses import dataclass, asdict
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
from cryptography.x509.oid import ExtensionOID, NameOID
from pyasn1.codec.ber import encoder as ber_encoder
from pyasn1.type import namedtype, tag, univ
from pyasn1_modules import rfc2315

logger = logging.getLogger(__name__)

PEM_CERT_END = '-----END CERTIFICATE-----'
PEM_PKCS7_BEGIN = '-----BEGIN PKCS7-----'
PEM_PKCS7_END = '-----END PKCS7-----'
DEFAULT_FRIENDLY_NAME = 'CertSmith Export'

CA_POLICY_LENIENT = 'lenient'
CA_POLICY_STRICT = 'strict'
CA_POLICIES = (CA_POLICY_LENIENT, CA_POLICY_STRICT)

LEAF_ORDINAL = 'ordinal'
LEAF_CHAIN = 'chain'
LEAF_SELECTIONS = (LEAF_ORDINAL, LEAF_CHAIN)

PFX_CIPHER_LEGACY = 'legacy'
PFX_CIPHER_MODERN = 'modern'
PFX_CIPHERS = (PFX_CIPHER_LEGACY, PFX_CIPHER_MODERN)

# Iteration count used by OpenSSL for PKCS#12 key derivation
PFX_KDF_ROUNDS = 50000

PKCS12_EXTENSIONS = ('.pfx', '.p12')
PKCS7_EXTENSIONS = ('.p7b', '.p7c')

_CREDENTIAL_HINT = re.compile(r'password|mac', re.IGNORECASE)
_NO_CERTS_HINT = re.compile(r'no certificate', re.IGNORECASE)

PFX_GENERATION_FAILED = (
    'Failed to generate PFX. Ensure your Private Key and Certificate match '
    'and are valid PEM format.'
)
P7B_FORMATS_HINT = (
    'Failed to parse P7B. Supported formats: DER (binary) or PEM '
    '("-----BEGIN PKCS7-----") encoded PKCS#7 files (.p7b, .p7c).'
)


class BundleError(Exception):
    """Base class for every error raised by the codec."""
    kind = 'error'


class CredentialError(BundleError):
    """Wrong or missing password for a container or a private key."""
    kind = 'credential'


class KeyPasswordRequired(CredentialError):
    pass


class BundleFormatError(BundleError):
    """Input is not valid DER/PEM for the expected structure."""
    kind = 'format'


class NoCertificatesFound(BundleFormatError):
    pass


class InvalidCABlock(BundleFormatError):
    pass


class BundleGenerationError(BundleError):
    kind = 'generation'


@dataclass
class ParsedComponents:
    """Decoded contents of a PKCS#12 or PKCS#7 bundle, all as PEM text."""
    key: Optional[str] = None
    cert: Optional[str] = None
    ca: Optional[str] = None
    friendly_name: Optional[str] = None

    def to_dict(self):
        return asdict(self)


def detect_input_type(text):
    """Detect what kind of PEM object the user provided"""
    text_upper = text.upper()
    if 'BEGIN CERTIFICATE REQUEST' in text_upper or 'BEGIN NEW CERTIFICATE REQUEST' in text_upper:
        return 'csr'
    elif 'BEGIN PKCS7' in text_upper:
        return 'pkcs7'
    elif 'BEGIN CERTIFICATE' in text_upper or 'BEGIN X509 CERTIFICATE' in text_upper:
        return 'certificate'
    elif 'BEGIN ENCRYPTED PRIVATE KEY' in text_upper or 'PROC-TYPE: 4,ENCRYPTED' in text_upper:
        return 'encrypted_private_key'
    elif re.search(r'BEGIN (RSA |EC |DSA )?PRIVATE KEY', text_upper):
        return 'private_key'
    elif 'BEGIN' in text_upper:
        return 'unknown_pem'
    else:
        return 'unknown'


def bundle_kind_for_filename(filename):
    """Map an uploaded file name to the container type it should hold."""
    lower = (filename or '').lower()
    if lower.endswith(PKCS12_EXTENSIONS):
        return 'pkcs12'
    if lower.endswith(PKCS7_EXTENSIONS):
        return 'pkcs7'
    raise BundleFormatError('Invalid file type. Supported formats: .pfx, .p12, .p7b, .p7c')


def _to_pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode('ascii')


def _join_pems(certs):
    if not certs:
        return None
    return '\n'.join(_to_pem(cert) for cert in certs)


def _password_bytes(password):
    if not password:
        return None
    if isinstance(password, bytes):
        return password
    return password.encode('utf-8')


def _load_certificate(cert_text):
    """Load a certificate from PEM text, or from bare base64 DER."""
    if not cert_text or not cert_text.strip():
        raise BundleFormatError('Certificate appears to be empty. Please paste a valid certificate.')

    input_type = detect_input_type(cert_text)
    if input_type in ('private_key', 'encrypted_private_key'):
        raise BundleFormatError(
            'It looks like you pasted a private key instead of a certificate. '
            'Certificates start with "-----BEGIN CERTIFICATE-----".'
        )
    elif input_type == 'csr':
        raise BundleFormatError(
            'It looks like you pasted a Certificate Signing Request (CSR) instead of a certificate.'
        )

    try:
        if input_type == 'unknown':
            cert_der = base64.b64decode(''.join(cert_text.split()), validate=True)
            return x509.load_der_x509_certificate(cert_der, default_backend())
        return x509.load_pem_x509_certificate(cert_text.strip().encode('utf-8'), default_backend())
    except ValueError as e:
        raise BundleFormatError(
            'Failed to parse the certificate. Please ensure you\'ve copied the complete '
            f'certificate including the BEGIN and END lines. Error: {e}'
        ) from e


def load_private_key(key_text, password=None):
    """
    Load a PEM private key.

    The key is tried unencrypted first. An encrypted key without a password
    raises KeyPasswordRequired; with a password it is loaded a second time.
    """
    if not key_text or not key_text.strip():
        raise BundleFormatError('Private key appears to be empty. Please paste a valid private key.')

    input_type = detect_input_type(key_text)
    if input_type == 'certificate':
        raise BundleFormatError(
            'It looks like you pasted a certificate instead of a private key. '
            'Please paste the private key that matches your certificate.'
        )
    elif input_type == 'csr':
        raise BundleFormatError(
            'It looks like you pasted a CSR instead of a private key. '
            'Please paste the private key that was used to generate the CSR.'
        )

    key_bytes = key_text.strip().encode('utf-8')
    try:
        return serialization.load_pem_private_key(key_bytes, password=None, backend=default_backend())
    except TypeError as e:
        # Raised when the key is encrypted and no password was passed
        if not password:
            raise KeyPasswordRequired(
                'The private key is encrypted. Please provide the key password.'
            ) from e
        plain_error = e
    except (ValueError, UnsupportedAlgorithm) as e:
        if not password:
            raise BundleFormatError(
                'Failed to parse private key. Please ensure you\'ve copied the complete '
                f'private key including the BEGIN and END lines. Error: {e}'
            ) from e
        plain_error = e

    try:
        return serialization.load_pem_private_key(
            key_bytes, password=_password_bytes(password), backend=default_backend()
        )
    except (TypeError, ValueError, UnsupportedAlgorithm) as e:
        if isinstance(plain_error, TypeError):
            raise CredentialError('Failed to decrypt the private key. Check the key password.') from e
        raise BundleFormatError(f'Failed to parse private key: {plain_error}') from e


def _derive_public_key(private_key):
    """Rebuild the public key from the private key's own parameters."""
    if isinstance(private_key, rsa.RSAPrivateKey):
        numbers = private_key.private_numbers().public_numbers
        return rsa.RSAPublicNumbers(numbers.e, numbers.n).public_key(default_backend())
    return private_key.public_key()


def _public_key_pem(public_key):
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _key_matches(cert, private_key):
    return _public_key_pem(cert.public_key()) == _public_key_pem(_derive_public_key(private_key))


def split_ca_bundle(ca_text, policy=CA_POLICY_LENIENT):
    """
    Split concatenated CA certificates into certificate objects.

    Blocks are cut on the END CERTIFICATE marker. With the lenient policy a
    block that does not parse is dropped; with the strict policy it raises
    InvalidCABlock.
    """
    if policy not in CA_POLICIES:
        raise ValueError(f'Unknown CA block policy: {policy}')
    if not ca_text:
        return []

    certs = []
    for index, block in enumerate(ca_text.split(PEM_CERT_END), start=1):
        trimmed = block.strip()
        if not trimmed:
            continue
        try:
            certs.append(x509.load_pem_x509_certificate(
                (trimmed + '\n' + PEM_CERT_END + '\n').encode('utf-8'), default_backend()
            ))
        except ValueError as e:
            if policy == CA_POLICY_STRICT:
                raise InvalidCABlock(f'CA certificate block {index} is not a valid PEM certificate.') from e
            logger.warning('Skipping CA block %d: not a valid PEM certificate', index)
    return certs


def _chain_leaf_index(certs, private_key=None):
    if private_key is not None:
        for index, cert in enumerate(certs):
            if _key_matches(cert, private_key):
                return index
    # End entity: a certificate that did not issue any other one in the bundle
    for index, cert in enumerate(certs):
        if not any(other.issuer == cert.subject for other in certs if other is not cert):
            return index
    return 0


def _leaf_index(certs, private_key=None, leaf_selection=LEAF_ORDINAL):
    """Position of the leaf certificate, or None for an empty list."""
    if leaf_selection not in LEAF_SELECTIONS:
        raise ValueError(f'Unknown leaf selection: {leaf_selection}')
    if not certs:
        return None
    index = 0
    if leaf_selection == LEAF_CHAIN:
        index = _chain_leaf_index(certs, private_key)
    logger.debug('Selected certificate %d of %d as leaf (%s)', index + 1, len(certs), leaf_selection)
    return index


def _split_leaf(certs, index):
    if index is None:
        return None, []
    return certs[index], certs[:index] + certs[index + 1:]


def extract_from_pfx(bundle_bytes, unlock_password, output_key_password=None,
                     leaf_selection=LEAF_ORDINAL):
    """
    Extract key, certificate and CA chain from a PKCS#12 container.

    If output_key_password is given the private key is re-encrypted as
    PKCS#8 (AES-256) under that password; otherwise it is returned unencrypted.

    Certificates are taken in the order load_pkcs12 reports them: the
    certificate linked to the key by its local key id first, then every other
    certificate bag. With leaf_selection="ordinal" the first of these is the
    leaf, so a PFX that stores CA bags ahead of the leaf bag still yields the
    key's certificate as leaf.
    """
    try:
        p12 = pkcs12.load_pkcs12(bundle_bytes, _password_bytes(unlock_password), default_backend())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        if _CREDENTIAL_HINT.search(str(e)):
            raise CredentialError('Invalid password or corrupted file.') from e
        raise BundleFormatError(f'Failed to parse PFX: {e}') from e

    bags = []
    if p12.cert is not None:
        bags.append(p12.cert)
    bags.extend(p12.additional_certs)
    logger.debug('PFX holds %d certificate bag(s), key present: %s', len(bags), p12.key is not None)

    key_pem = None
    if p12.key is not None:
        if output_key_password:
            encryption = serialization.BestAvailableEncryption(_password_bytes(output_key_password))
        else:
            encryption = serialization.NoEncryption()
        key_pem = p12.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        ).decode('ascii')

    certs = [bag.certificate for bag in bags]
    index = _leaf_index(certs, p12.key, leaf_selection)
    leaf, cas = _split_leaf(certs, index)

    friendly_name = None
    if index is not None and bags[index].friendly_name:
        friendly_name = bags[index].friendly_name.decode('utf-8', errors='replace')

    return ParsedComponents(
        key=key_pem,
        cert=_to_pem(leaf) if leaf is not None else None,
        ca=_join_pems(cas),
        friendly_name=friendly_name,
    )


def _load_pkcs7_certificates(data):
    try:
        return pkcs7.load_der_pkcs7_certificates(data)
    except (ValueError, UnsupportedAlgorithm) as der_error:
        if _NO_CERTS_HINT.search(str(der_error)):
            raise NoCertificatesFound('No certificates found in the P7B file.') from der_error
    try:
        return pkcs7.load_pem_pkcs7_certificates(data)
    except (ValueError, UnsupportedAlgorithm) as pem_error:
        if _NO_CERTS_HINT.search(str(pem_error)):
            raise NoCertificatesFound('No certificates found in the P7B file.') from pem_error
        raise BundleFormatError(P7B_FORMATS_HINT) from pem_error


def extract_from_p7b(bundle_bytes, leaf_selection=LEAF_ORDINAL):
    """Extract the certificate chain from a DER or PEM PKCS#7 bundle."""
    if isinstance(bundle_bytes, str):
        bundle_bytes = bundle_bytes.encode('utf-8')
    if not bundle_bytes:
        raise BundleFormatError(P7B_FORMATS_HINT)

    certs = _load_pkcs7_certificates(bundle_bytes)
    if not certs:
        raise NoCertificatesFound('No certificates found in the P7B file.')
    logger.debug('P7B holds %d certificate(s)', len(certs))

    certs = list(certs)
    leaf, cas = _split_leaf(certs, _leaf_index(certs, None, leaf_selection))
    return ParsedComponents(key=None, cert=_to_pem(leaf), ca=_join_pems(cas))


def verify_cert_key_match(cert_pem, key_pem, password=None):
    """
    Check that a certificate and a private key form a pair.

    Returns False only when both inputs parsed and the public keys differ;
    parse failures raise BundleError subclasses.
    """
    cert = _load_certificate(cert_pem)
    private_key = load_private_key(key_pem, password)
    return _key_matches(cert, private_key)


def _pfx_encryption(password, cipher):
    if cipher not in PFX_CIPHERS:
        raise ValueError(f'Unknown PFX cipher: {cipher}')
    password_bytes = _password_bytes(password)
    if password_bytes is None:
        return serialization.NoEncryption()
    if cipher == PFX_CIPHER_MODERN:
        return serialization.BestAvailableEncryption(password_bytes)
    # Triple DES with a SHA1 MAC is what older certificate stores can import
    return (
        serialization.PrivateFormat.PKCS12.encryption_builder()
        .kdf_rounds(PFX_KDF_ROUNDS)
        .key_cert_algorithm(pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC)
        .hmac_hash(hashes.SHA1())
        .build(password_bytes)
    )


def create_pfx(key_pem, cert_pem, ca_pem, password, friendly_name=None,
               ca_policy=CA_POLICY_LENIENT, cipher=PFX_CIPHER_LEGACY, key_password=None):
    """Build a PKCS#12 container (DER bytes) from PEM key, certificate and CA bundle."""
    try:
        private_key = load_private_key(key_pem, key_password)
        cert = _load_certificate(cert_pem)
        if not _key_matches(cert, private_key):
            raise BundleGenerationError('Private key does not match the certificate.')
        cas = split_ca_bundle(ca_pem, ca_policy)
        logger.debug('Building PFX with %d CA certificate(s)', len(cas))

        name = (friendly_name or DEFAULT_FRIENDLY_NAME).encode('utf-8')
        return pkcs12.serialize_key_and_certificates(
            name=name,
            key=private_key,
            cert=cert,
            cas=cas or None,
            encryption_algorithm=_pfx_encryption(password, cipher),
        )
    except Exception as e:
        logger.debug('PFX generation failed: %s', type(e).__name__)
        raise BundleGenerationError(PFX_GENERATION_FAILED) from e


class _CertificateSet(univ.SetOf):
    """SET OF certificates kept as their original DER encoding."""
    componentType = univ.Any()


class _CertificateOnlySignedData(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('version', rfc2315.Version()),
        namedtype.NamedType('digestAlgorithms', rfc2315.DigestAlgorithmIdentifiers()),
        namedtype.NamedType('contentInfo', rfc2315.ContentInfo()),
        namedtype.OptionalNamedType('certificates', _CertificateSet().subtype(
            implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatConstructed, 0))),
        namedtype.NamedType('signerInfos', rfc2315.SignerInfos())
    )


def _pkcs7_certificates_der(certs):
    signed_data = _CertificateOnlySignedData()
    signed_data['version'] = 1
    signed_data['digestAlgorithms'] = rfc2315.DigestAlgorithmIdentifiers().clear()
    signed_data['contentInfo']['contentType'] = rfc2315.data
    cert_set = signed_data['certificates']
    for index, cert in enumerate(certs):
        cert_set.setComponentByPosition(index, cert.public_bytes(serialization.Encoding.DER))
    signed_data['signerInfos'] = rfc2315.SignerInfos().clear()

    content_info = rfc2315.ContentInfo()
    content_info['contentType'] = rfc2315.signedData
    # BER encoding keeps the SET OF in insertion order; DER would sort it
    content_info['content'] = ber_encoder.encode(signed_data)
    return ber_encoder.encode(content_info)


def create_p7b(cert_pem, ca_pem=None, ca_policy=CA_POLICY_LENIENT):
    """
    Build a certificate-only PKCS#7 bundle and return it as PEM text.

    Nothing is signed; the structure only carries the leaf followed by the
    CA certificates, in the order given.
    """
    cert = _load_certificate(cert_pem)
    chain = [cert] + split_ca_bundle(ca_pem, ca_policy)
    logger.debug('Building P7B with %d certificate(s)', len(chain))

    body = base64.b64encode(_pkcs7_certificates_der(chain)).decode('ascii')
    lines = [PEM_PKCS7_BEGIN] + textwrap.wrap(body, 64) + [PEM_PKCS7_END]
    return '\n'.join(lines) + '\n'


def _name_to_dict(name):
    labels = {
        NameOID.COMMON_NAME: 'CN',
        NameOID.ORGANIZATION_NAME: 'O',
        NameOID.ORGANIZATIONAL_UNIT_NAME: 'OU',
        NameOID.LOCALITY_NAME: 'L',
        NameOID.STATE_OR_PROVINCE_NAME: 'ST',
        NameOID.COUNTRY_NAME: 'C',
    }
    values = {}
    for attr in name:
        label = labels.get(attr.oid)
        if label:
            values[label] = attr.value
    return values


def describe_certificate(cert_pem):
    """Summarize subject, issuer, validity and serial number of a certificate."""
    cert = _load_certificate(cert_pem)
    subject = _name_to_dict(cert.subject)
    issuer = _name_to_dict(cert.issuer)

    san_list = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        san_list = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return {
        'subject': cert.subject.rfc4514_string(),
        'issuer': cert.issuer.rfc4514_string(),
        'common_name': subject.get('CN', ''),
        'organization': subject.get('O', ''),
        'issuer_cn': issuer.get('CN', ''),
        'san': san_list,
        'valid_from': cert.not_valid_before_utc.isoformat(),
        'valid_to': cert.not_valid_after_utc.isoformat(),
        'serial_number': format(cert.serial_number, 'x'),
    }
