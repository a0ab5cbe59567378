# Secret-store keys, one per credential.

ANTHROPIC_API_KEY = "anthropic-api-key"
OPENAI_API_KEY = "openai-api-key"
GROK_API_KEY = "grok-api-key"
GEMINI_API_KEY = "gemini-api-key"
HUGGINGFACE_TOKEN = "huggingface-token"

AWS_ACCESS_KEY = "aws-access-key"
AWS_SECRET_KEY = "aws-secret-key"
AWS_REGION = "aws-region"

OLLAMA_BASE_URL = "ollama-base-url"

S3_ACCESS_KEY = "s3-access-key"
S3_SECRET_KEY = "s3-secret-key"
S3_BUCKET_NAME = "s3-bucket-name"
S3_REGION = "s3-region"

BACKUP_ENCRYPTION_KEY = "backup-encryption-key"

ALL_KEYS = (
    ANTHROPIC_API_KEY,
    OPENAI_API_KEY,
    GROK_API_KEY,
    GEMINI_API_KEY,
    HUGGINGFACE_TOKEN,
    AWS_ACCESS_KEY,
    AWS_SECRET_KEY,
    AWS_REGION,
    OLLAMA_BASE_URL,
    S3_ACCESS_KEY,
    S3_SECRET_KEY,
    S3_BUCKET_NAME,
    S3_REGION,
    BACKUP_ENCRYPTION_KEY,
)
