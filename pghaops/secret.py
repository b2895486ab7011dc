from abc import ABC, abstractmethod
import base64
import os
import secrets


PASSWORD_LENGTH = 25


class SecretStore(ABC):
    @abstractmethod
    def get_secret(self, name: str) -> bytes:
        pass

    @abstractmethod
    def put_secret(self, name: str, value: bytes):
        pass


class SecretNotFoundError(Exception):
    pass


class LocalSecretStore(SecretStore):
    """
    Stores secrets as files in a local directory. Files are readable by
    their owner only.
    """

    def __init__(self, path: str):
        self.path = path

    def get_secret(self, name: str) -> bytes:
        try:
            with open(f'{self.path}/{name}', 'rb') as f:
                return f.read()
        except FileNotFoundError:
            raise SecretNotFoundError(name)

    def put_secret(self, name: str, value: bytes):
        os.makedirs(self.path, mode=0o700, exist_ok=True)
        fd = os.open(f'{self.path}/{name}', os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(value)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    # base64 of random bytes, minus the characters that break YAML and URLs
    password = ''
    while len(password) < length:
        encoded = base64.b64encode(secrets.token_bytes(32)).decode('ascii')
        password += encoded.translate(str.maketrans('', '', '=+/'))
    return password[:length]


def get_or_generate(store: SecretStore, name: str) -> tuple[str, bool]:
    """
    Returns the stored secret, generating and storing a new one if missing.
    The second value tells whether the secret was generated now.
    """
    try:
        return store.get_secret(name).decode('utf-8'), False
    except SecretNotFoundError:
        password = generate_password()
        store.put_secret(name, password.encode('utf-8'))
        return password, True
