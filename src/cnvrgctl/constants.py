"""Fixed names, defaults and the directory mode used across cnvrgctl."""

DIR_MODE = 0o755

DEFAULT_NAMESPACE = "default"
DEFAULT_WORKLOADS = ("app", "sidekiq", "systemkiq", "searchkiq", "cnvrg-operator")
DEFAULT_SCALE_TIMEOUT = 120.0
DEFAULT_TUNNEL_TIMEOUT = 30.0
SCALE_POLL_INTERVAL = 2.0

DEFAULT_LABEL_KEY = "app"
DEFAULT_FILE_LOCATION = "."

POSTGRES_DEPLOYMENT = "postgres"
POSTGRES_PORT = 5432
POSTGRES_BACKUP_FILE = "cnvrg-db-backup.sql"
POSTGRES_REMOTE_DIR = "/opt/app-root/src"
POSTGRES_USER = "cnvrg"
POSTGRES_DATABASE = "cnvrg_production"
POSTGRES_MAINTENANCE_DATABASE = "postgres"
POSTGRES_RESTORE_JOBS = 8

REDIS_DEPLOYMENT = "redis"
REDIS_BACKUP_FILE = "dump.rdb"
REDIS_DATA_DIR = "/data"
REDIS_SECRET_NAME = "redis-creds"
REDIS_PASSWORD_FIELD = "CNVRG_REDIS_PASSWORD"
REDIS_CONF_FIELD = "redis.conf"

STORAGE_SECRET_NAME = "cp-object-storage"
STORAGE_FIELD_PREFIX = "CNVRG_STORAGE_"
STORAGE_TYPE_MINIO = "minio"
STORAGE_TYPE_AWS = "aws"

EXEC_CHUNK_SIZE = 64 * 1024
