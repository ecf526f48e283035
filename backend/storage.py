import os
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from core.logger import setup_logger
from config_loader import get_settings

logger = setup_logger(__name__)

PRESIGNED_URL_EXPIRATION = 3600


class StorageClient:
    """Resolve referências de mídia (chaves no bucket S3/MinIO) em URLs que a Meta consegue baixar."""

    def __init__(self, client_id: int = None):
        settings = get_settings(client_id)
        self.endpoint_url = settings["S3_ENDPOINT_URL"]
        self.access_key = settings["S3_ACCESS_KEY"]
        self.secret_key = settings["S3_SECRET_KEY"]
        self.bucket_name = settings["S3_BUCKET_NAME"] or "flowengine-files"
        self.region = settings["S3_REGION"] or "us-east-1"
        self.public_url = settings["S3_PUBLIC_URL"]

        # Só inicializa se tiver config
        if self.endpoint_url and self.access_key:
            self.s3_client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region
            )
        else:
            self.s3_client = None

    def url_for(self, key: str) -> str:
        key = key.lstrip("/")

        # 1. Se tiver S3_PUBLIC_URL (ex: https://cdn.meudominio.com), usa ela
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{self.bucket_name}/{key}"

        # 2. Bucket privado: URL assinada temporária
        if self.s3_client:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': key},
                ExpiresIn=PRESIGNED_URL_EXPIRATION
            )

        # 3. Armazenamento local servido pela própria API
        base_url = os.getenv("API_BASE_URL", "http://127.0.0.1:8000")
        if key.startswith("static/"):
            return f"{base_url}/{key}"
        return f"{base_url}/static/uploads/{key}"


def resolve_asset_url(ref: str, client_id: int = None):
    """URL pública da mídia, ou None se a referência estiver vazia ou não puder ser resolvida."""
    if not ref or not ref.strip():
        return None
    ref = ref.strip()
    if ref.startswith(("http://", "https://")):
        return ref
    try:
        return StorageClient(client_id=client_id).url_for(ref)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Erro ao resolver mídia '{ref}': {e}")
        return None
