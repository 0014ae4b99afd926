"""
pbdeploy Constants

Centralized constants for magic values, defaults, and configuration.
"""

# Default SSH Configuration
DEFAULT_SSH_PORT = 22
DEFAULT_ROOT_USERNAME = "root"
DEFAULT_APP_USERNAME = "pocketbase"
SSH_AUTH_SOCK_ENV = "SSH_AUTH_SOCK"

# SSH Timeout Configuration (seconds)
SSH_CONNECT_TIMEOUT = 30
SSH_COMMAND_TIMEOUT = 300
SSH_KEEPALIVE_INTERVAL = 30
SSH_MAX_RETRIES = 3
SSH_RETRY_DELAY = 2
HEALTH_CHECK_COMMAND = "true"
HEALTH_CHECK_TIMEOUT = 5

# Connection Pool Configuration (seconds unless noted)
POOL_MAX_CONNECTIONS = 10
POOL_MAX_IDLE_TIME = 15 * 60
POOL_MAX_LIFETIME = 60 * 60
POOL_HEALTH_CHECK_INTERVAL = 30
POOL_CLEANUP_INTERVAL = 5 * 60
POOL_HEALTH_FAILURE_THRESHOLD = 3

# Remote Paths
POCKETBASE_ROOT = "/opt/pocketbase"
APPS_DIR = "/opt/pocketbase/apps"
BACKUPS_DIR = "/opt/pocketbase/backups"
STAGING_DIR = "/opt/pocketbase/staging"
APP_LOGS_DIR = "/opt/pocketbase/logs"
SYSTEM_LOG_DIR = "/var/log/pocketbase"
SSHD_CONFIG_PATH = "/etc/ssh/sshd_config"
SSHD_CONFIG_BACKUP_PATH = "/etc/ssh/sshd_config.pbdeploy.bak"
FAIL2BAN_JAIL_PATH = "/etc/fail2ban/jail.local"
SUDOERS_DIR = "/etc/sudoers.d"
SYSTEMD_UNIT_DIR = "/etc/systemd/system"
SETUP_DIRECTORIES = [POCKETBASE_ROOT, APPS_DIR, BACKUPS_DIR, STAGING_DIR, APP_LOGS_DIR, SYSTEM_LOG_DIR]

# Server Setup
REQUIRED_PACKAGES = ["curl", "unzip", "ufw", "fail2ban", "libcap2-bin"]
SUDO_ALLOWED_COMMANDS = [
    "/bin/systemctl",
    "/usr/bin/systemctl",
    "/bin/journalctl",
    "/usr/bin/journalctl",
    "/bin/mkdir",
    "/usr/bin/mkdir",
    "/bin/chown",
    "/usr/bin/chown",
    "/bin/chmod",
    "/usr/bin/chmod",
    "/bin/cp",
    "/usr/bin/cp",
    "/bin/mv",
    "/usr/bin/mv",
    "/bin/rm",
    "/usr/bin/rm",
    "/usr/bin/tee",
    "/usr/sbin/setcap",
    "/usr/sbin/ufw",
    "/usr/bin/fail2ban-client",
]
PACKAGE_INSTALL_TIMEOUT = 600

# Security Lockdown
FIREWALL_ALLOWED_PORTS = [80, 443]
FAIL2BAN_BANTIME = 3600
FAIL2BAN_FINDTIME = 600
FAIL2BAN_MAXRETRY = 3
FAIL2BAN_WATCHED_SERVICES = ["sshd"]
SSH_SERVICE_CANDIDATES = ["ssh", "sshd"]
SSHD_PASSWORD_SETTINGS = {
    "PasswordAuthentication": "no",
    "PermitEmptyPasswords": "no",
    "ChallengeResponseAuthentication": "no",
    "KbdInteractiveAuthentication": "no",
    "PubkeyAuthentication": "yes",
    "X11Forwarding": "no",
    "MaxAuthTries": "3",
    "ClientAliveInterval": "300",
    "ClientAliveCountMax": "2",
}
SSHD_ROOT_SETTINGS = {"PermitRootLogin": "no"}

# Deployment Configuration
DEFAULT_HTTP_PORT = 8090
BACKUP_RETENTION = 5
STAGING_MAX_AGE_MINUTES = 60
DEPLOYMENT_LOG_MAX_BYTES = 50 * 1024
HEALTH_PROBE_ATTEMPTS = 15
HEALTH_PROBE_DELAY = 2
START_PROBE_ATTEMPTS = 30
START_PROBE_DELAY = 2
STOP_WAIT_SECONDS = 10
SERVICE_LIMIT_NOFILE = 4096
REQUIRED_ARTIFACT_DIRS = ["pb_public/"]
OPTIONAL_ARTIFACT_DIRS = ["pb_migrations/", "pb_hooks/"]
DEFAULT_BINARY_NAME = "pocketbase"

# Diagnostics Configuration
DIAGNOSTIC_DIAL_TIMEOUT = 10
BAN_DETECTION_WINDOW = 60 * 60

# Progress Subscriptions
SETUP_SUBSCRIPTION = "server_setup"
SECURITY_SUBSCRIPTION = "server_security"
DEPLOYMENT_SUBSCRIPTION = "deployment_progress"

# Local Files
CONFIG_FILENAME = "pbdeploy.yml"
DATABASE_FILENAME = "pbdeploy.db"
ENV_PREFIX = "PBDEPLOY_"

# Log Configuration
LOG_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
