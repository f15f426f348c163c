"""
Bootstrap script rendering.

Every script a sandbox runs is rendered here from explicit inputs. Nothing
reads configuration or global state, so rendering can be tested by
asserting on the output without executing it.
"""

from dataclasses import dataclass
from typing import Optional

SANDBOX_HOME = '/home/sprite'
REPO_DIR = '/home/sprite/repo'
ENV_PROFILE = '/etc/profile.d/sprite-env.sh'
WRAPPER_PATH = '/tmp/task-loop-wrapper.sh'
WRAPPER_LOG = '/tmp/wrapper.log'
CALLBACK_SCRIPT_PATH = '/tmp/abraxas-run.sh'
SANDBOX_LOG = '/tmp/abraxas.log'
OPENCODE_PORT = 8080

DEFAULT_OPENCODE_MODEL = 'anthropic/claude-opus-4-5-20251101'


def get_auth_repo_url(repo_url: str, token: str) -> str:
    """Embed an access token in an https GitHub URL."""
    return repo_url.replace('https://github.com/', f'https://{token}@github.com/')


def escape_for_double_quotes(text: str) -> str:
    """Escape text for use inside a double-quoted bash string."""
    return (
        text.replace('\\', '\\\\')
        .replace('"', '\\"')
        .replace('$', '\\$')
        .replace('`', '\\`')
    )


@dataclass
class BaseSetupConfig:
    github_token: str
    repo_url: str
    opencode_setup_repo_url: str
    opencode_auth: Optional[str] = None
    local_setup_script: Optional[str] = None
    git_user_email: str = 'abraxas@sprites.dev'
    git_user_name: str = 'abraxxxxas'
    branch_name: Optional[str] = None
    model: str = DEFAULT_OPENCODE_MODEL


_ENV_EXPORTS = r'''export PNPM_HOME="/home/sprite/.local/share/pnpm"
export PATH="/usr/local/bin:$PNPM_HOME:/home/sprite/.opencode/bin:$PATH"
export HOME=/home/sprite
export XDG_CONFIG_HOME=/home/sprite/.config
export XDG_DATA_HOME=/home/sprite/.local/share
export DOCKER_HOST="unix:///var/run/docker.sock"'''

_NETWORK_AND_DOWNLOADS = r'''
# Verify network connectivity
echo "Checking network connectivity..."
ping -c 2 google.com || fail_setup "Network unreachable"
echo "Network OK"

mkdir -p /home/sprite/.local/share/opencode
mkdir -p /home/sprite/.config/opencode/command
mkdir -p /home/sprite/.config/opencode/skill
mkdir -p /home/sprite/repo

echo "Starting parallel downloads and installs..."
'''

_WAIT_FOR_DOWNLOADS = r'''
export SHELL=/bin/bash
curl -fsSL https://get.pnpm.io/install.sh | SHELL=/bin/bash sh - &
PID_PNPM=$!

# Docker install is slow; the task-loop wrapper waits for it
nohup sh -c 'curl -fsSL https://get.docker.com | sh' > /tmp/docker-install.log 2>&1 &
echo "Docker install started in background (PID: $!)"

echo "Waiting for downloads to complete..."
wait $PID_REPO || fail_setup "Failed to clone repository"
echo "Repo cloned"
wait $PID_OPENCODE || fail_setup "Failed to install opencode"
echo "Opencode installed"
wait $PID_SETUP || fail_setup "Failed to download opencode setup bundle"
echo "Setup tarball extracted"
wait $PID_PNPM || fail_setup "Failed to install pnpm"
echo "pnpm installed"

export PNPM_HOME="/home/sprite/.local/share/pnpm"
export PATH="/usr/local/bin:$PNPM_HOME:/home/sprite/.opencode/bin:$PATH"
export DOCKER_HOST="unix:///var/run/docker.sock"
'''

_PNPM_INSTALL = r'''
if [ -f /home/sprite/repo/package.json ]; then
    echo "Running pnpm install..."
    cd /home/sprite/repo
    pnpm install --frozen-lockfile 2>&1 || pnpm install 2>&1 || echo "WARNING: pnpm install had issues (continuing anyway)"
    echo "pnpm install complete"
fi
'''


def _opencode_config(model: str) -> str:
    return (
        '{\n'
        '  "$schema": "https://opencode.ai/config.json",\n'
        f'  "model": "{model}",\n'
        '  "agent": {\n'
        '    "build": {\n'
        '      "permission": {\n'
        '        "read": {".sprite/*": "allow", "/.sprite/*": "allow"},\n'
        '        "write": {".sprite/*": "allow", "/.sprite/*": "allow"}\n'
        '      }\n'
        '    }\n'
        '  }\n'
        '}'
    )


def _branch_checkout(branch_name: Optional[str]) -> str:
    if not branch_name:
        return '# No branch specified, using default\n'
    return f'''
echo "Checking out branch: {branch_name}"
git fetch origin "{branch_name}" 2>/dev/null || true
if git show-ref --verify --quiet "refs/remotes/origin/{branch_name}"; then
    echo "Branch exists on remote, checking out..."
    git checkout "{branch_name}" || fail_setup "Failed to checkout branch {branch_name}"
    git pull origin "{branch_name}" 2>&1 || true
else
    echo "Creating new branch: {branch_name}"
    git checkout -b "{branch_name}" || fail_setup "Failed to create branch {branch_name}"
fi
'''


def generate_base_setup_script(config: BaseSetupConfig) -> str:
    """Render the setup shared by every sandbox.

    Checks the network, clones the repository and installs the agent runtime
    in parallel, writes the environment profile, installs credentials and
    the command/skill bundle, configures git, optionally checks out the
    target branch, installs dependencies, runs the project's local setup
    script and finally starts ``opencode serve``.
    """
    auth_repo_url = get_auth_repo_url(config.repo_url, config.github_token)
    setup_repo_name = config.opencode_setup_repo_url.rstrip('/').split('/')[-1] or 'opencode-setup'
    setup_dir = f'/tmp/{setup_repo_name}-main'

    parts = [
        '# ===========================================',
        '# Base Setup - Common to all sprite executions',
        '# ===========================================',
        _NETWORK_AND_DOWNLOADS,
        f'git clone --depth 1 "{auth_repo_url}" {REPO_DIR} &',
        'PID_REPO=$!',
        '',
        'curl -fsSL https://opencode.ai/install | bash &',
        'PID_OPENCODE=$!',
        '',
        f'curl -sL {config.opencode_setup_repo_url}/archive/refs/heads/main.tar.gz | tar -xzf - -C /tmp &',
        'PID_SETUP=$!',
        _WAIT_FOR_DOWNLOADS,
        "cat >> /home/sprite/.bashrc << 'BASHRCEOF'",
        _ENV_EXPORTS,
        'BASHRCEOF',
        '',
        f"cat > {ENV_PROFILE} << 'PROFILEEOF'",
        _ENV_EXPORTS,
        'PROFILEEOF',
        '',
    ]

    if config.opencode_auth:
        parts += [
            'echo "Setting up opencode auth..."',
            "cat > /home/sprite/.local/share/opencode/auth.json << 'AUTHEOF'",
            config.opencode_auth,
            'AUTHEOF',
            'chmod 600 /home/sprite/.local/share/opencode/auth.json',
        ]
    else:
        parts.append('echo "No opencode auth configured"')

    parts += [
        '',
        '# Install commands, skills and task-loop',
        f'cp {setup_dir}/command/*.md /home/sprite/.config/opencode/command/ 2>/dev/null || true',
        f'cp -r {setup_dir}/skill/* /home/sprite/.config/opencode/skill/ 2>/dev/null || true',
        f'if [ -f {setup_dir}/bin/task-loop.sh ]; then',
        f'    cp {setup_dir}/bin/task-loop.sh /usr/local/bin/task-loop && chmod +x /usr/local/bin/task-loop',
        'fi',
        '',
        f'cd {REPO_DIR}',
        f'git config user.email "{config.git_user_email}"',
        f'git config user.name "{config.git_user_name}"',
        _branch_checkout(config.branch_name),
        f"cat > {REPO_DIR}/opencode.json << 'CONFIGEOF'",
        _opencode_config(config.model),
        'CONFIGEOF',
        _PNPM_INSTALL,
    ]

    if config.local_setup_script:
        parts += [
            'echo "Running local setup script..."',
            "cat > /tmp/local-setup.sh << 'LOCALSETUPEOF'",
            config.local_setup_script,
            'LOCALSETUPEOF',
            'chmod +x /tmp/local-setup.sh',
            f'cd {REPO_DIR}',
            '/tmp/local-setup.sh 2>&1 || echo "WARNING: Local setup script failed (continuing anyway)"',
            'echo "Local setup script finished"',
        ]
    else:
        parts.append('echo "No local setup script configured"')

    parts += [
        '',
        'echo "Starting opencode serve..."',
        'HOME=/home/sprite XDG_CONFIG_HOME=/home/sprite/.config XDG_DATA_HOME=/home/sprite/.local/share '
        f'nohup opencode serve --hostname 0.0.0.0 --port {OPENCODE_PORT} > /tmp/opencode-serve.log 2>&1 &',
        'sleep 2',
        f'echo "opencode serve started on port {OPENCODE_PORT}"',
        '',
        'echo "=== Base Setup Complete ==="',
        '',
    ]
    return '\n'.join(parts)


_FAILURE_FUNCTIONS = r'''
send_error() {
    local payload
    payload=$(jq -n --arg type "error" --arg error "$1" '{type: $type, error: $error}')
    send_webhook "$payload"
}

# Report a setup failure and stop
fail_setup() {
    echo "ERROR: $1"
    send_error "$1" || true
    exit 1
}
'''


def generate_webhook_functions(webhook_url: str, webhook_secret: str) -> str:
    """Bash helpers that sign a JSON payload and post it to the orchestrator."""
    return f'''WEBHOOK_URL="{webhook_url}"
WEBHOOK_SECRET="{webhook_secret}"
''' + r'''
send_webhook() {
    local payload="$1"
    local signature
    signature="sha256=$(echo -n "$payload" | openssl dgst -sha256 -hmac "$WEBHOOK_SECRET" | awk '{print $2}')"

    curl -s -X POST "$WEBHOOK_URL" \
        -H "Content-Type: application/json" \
        -H "X-Webhook-Signature: $signature" \
        -d "$payload" > /dev/null 2>&1 || true
}
''' + _FAILURE_FUNCTIONS


def generate_task_loop_wrapper_script(
    prd_name: str,
    webhook_url: str,
    webhook_secret: str,
    has_local_setup: bool = False,
) -> str:
    """Render the script that runs ``task-loop`` for a PRD inside a sandbox.

    Reports ``task_loop_started`` once the loop is about to run, then
    ``completed`` with the final PRD document on a clean exit or ``error``
    with the exit code otherwise.
    """
    docker_compose = (
        r'''
if [ "$DOCKER_READY" = true ]; then
  cd /home/sprite/repo
  if [ -f "docker-compose.yml" ] || [ -f "docker-compose.yaml" ]; then
    RUNNING_CONTAINERS=$(sudo docker compose ps -q 2>/dev/null | wc -l)
    if [ "$RUNNING_CONTAINERS" -gt 0 ]; then
      log "Docker compose services already running ($RUNNING_CONTAINERS containers)"
    else
      log "Starting docker compose services..."
      sudo docker compose up -d
      sleep 5
      log "Docker services started"
    fi
  fi
else
  log "WARNING: Docker not ready, skipping docker compose"
fi
'''
        if has_local_setup
        else '# No local setup - skipping docker compose\n'
    )

    header = r'''#!/bin/bash
set -uo pipefail

log() { echo "[$(date '+%Y-%m-%d %H:%M:%S')] $*"; }
''' + generate_webhook_functions(webhook_url, webhook_secret) + r'''
# Detached sessions do not source the profile; setup may still be writing it
for i in {1..30}; do
  if [ -f /etc/profile.d/sprite-env.sh ]; then
    source /etc/profile.d/sprite-env.sh
    log "Environment sourced"
    break
  fi
  sleep 1
done

if [ ! -f /etc/profile.d/sprite-env.sh ]; then
  fail_setup "/etc/profile.d/sprite-env.sh not found after 30s"
fi

DOCKERD_PID=""
DOCKER_READY=false

if sudo docker info > /dev/null 2>&1; then
  log "Docker already running"
  DOCKER_READY=true
else
  log "Waiting for Docker installation..."
  for i in {1..60}; do
    if command -v dockerd &> /dev/null; then
      log "Docker installed after ${i}s"
      break
    fi
    sleep 1
  done

  if command -v dockerd &> /dev/null; then
    log "Starting Docker daemon..."
    sudo dockerd > /dev/null 2>&1 &
    DOCKERD_PID=$!
    for i in {1..30}; do
      if sudo docker info > /dev/null 2>&1; then
        log "Docker is ready"
        DOCKER_READY=true
        break
      fi
      sleep 1
    done
  else
    log "Docker not installed, skipping"
  fi
fi
'''

    body = f'''
PRD_NAME="{prd_name}"
BRANCH_NAME="manifest-{prd_name}"
PRD_FILE="/home/sprite/repo/.opencode/state/{prd_name}/prd.json"
''' + r'''
# Sprites go to sleep without outbound traffic
(
  while true; do
    curl -s https://example.com > /dev/null 2>&1 || true
    sleep 30
  done
) &
KEEPALIVE_PID=$!
trap "kill $KEEPALIVE_PID 2>/dev/null || true" EXIT

send_webhook "$(jq -n --arg type "task_loop_started" --arg branchName "$BRANCH_NAME" '{type: $type, branchName: $branchName}')"

cd /home/sprite/repo
task-loop "$PRD_NAME" 2>&1 | while IFS= read -r line; do echo "[$(date '+%Y-%m-%d %H:%M:%S')] $line"; done | tee /tmp/task-loop.log
TASK_EXIT_CODE=${PIPESTATUS[0]}

if [ "$TASK_EXIT_CODE" -eq 0 ]; then
    PRD_CONTENT=""
    [ -f "$PRD_FILE" ] && PRD_CONTENT=$(cat "$PRD_FILE")
    send_webhook "$(jq -n --arg type "completed" --arg prdJson "$PRD_CONTENT" '{type: $type, prdJson: $prdJson}')"
else
    send_error "task-loop exited with code $TASK_EXIT_CODE"
fi

if [ -n "${DOCKERD_PID:-}" ]; then
  log "Stopping Docker..."
  cd /home/sprite/repo
  if [ -f "docker-compose.yml" ] || [ -f "docker-compose.yaml" ]; then
    sudo docker compose down > /dev/null 2>&1 || true
  fi
  sudo kill $DOCKERD_PID 2>/dev/null || true
  log "Docker stopped"
fi

exit "$TASK_EXIT_CODE"
'''
    return header + docker_compose + body


def launch_wrapper_command() -> str:
    """Shell command that starts the uploaded wrapper in its own session."""
    return f'setsid {WRAPPER_PATH} > {WRAPPER_LOG} 2>&1 < /dev/null &'


def generate_manifest_bootstrap_script(
    base_setup: BaseSetupConfig,
    webhook_url: str,
    webhook_secret: str,
    prd_name: Optional[str] = None,
    has_local_setup: bool = False,
) -> str:
    """Render the full bootstrap for a manifest sandbox.

    Runs the base setup, reports ``started`` and, when a PRD name is set,
    writes and launches the task-loop wrapper so the loop begins without a
    second round trip.
    """
    parts = [
        '#!/bin/bash',
        'set -uo pipefail',
        f'exec > >(tee -a {SANDBOX_LOG}) 2>&1',
        '',
        generate_webhook_functions(webhook_url, webhook_secret),
        generate_base_setup_script(base_setup),
        'send_webhook "$(jq -n --arg type "started" --arg message "Sprite setup complete" '
        "'{type: $type, message: $message}')\"",
        '',
    ]
    if prd_name:
        wrapper = generate_task_loop_wrapper_script(
            prd_name, webhook_url, webhook_secret, has_local_setup
        )
        parts += [
            f"cat > {WRAPPER_PATH} << 'WRAPPEREOF'",
            wrapper,
            'WRAPPEREOF',
            f'chmod +x {WRAPPER_PATH}',
            launch_wrapper_command(),
            'echo "Task loop launched"',
        ]
    else:
        parts.append('echo "No PRD name set, waiting for task loop start"')
    parts.append('')
    return '\n'.join(parts)


_CALLBACK_FUNCTIONS = r'''
send_webhook() {
    local payload="$1"
    local signature
    signature="sha256=$(echo -n "$payload" | openssl dgst -sha256 -hmac "$WEBHOOK_SECRET" | awk '{print $2}')"

    local response_code
    response_code=$(curl -s -w "%{http_code}" -o /tmp/webhook-response.txt -X POST "$WEBHOOK_URL" \
        -H "Content-Type: application/json" \
        -H "X-Webhook-Signature: $signature" \
        -d "$payload")
    if [ "$response_code" = "200" ]; then
        echo "Webhook sent (HTTP $response_code)"
        return 0
    fi
    echo "ERROR: Webhook failed (HTTP $response_code)"
    return 1
}

extract_token_stats() {
    local json_file="$1"
    if [ ! -f "$json_file" ]; then
        echo '{"messageCount":0,"inputTokens":0,"outputTokens":0}'
        return
    fi
    local message_count input_tokens output_tokens
    message_count=$(grep -c '"type":"step_finish"' "$json_file" 2>/dev/null || echo "0")
    input_tokens=$(grep -o '"input":[0-9]*' "$json_file" 2>/dev/null | grep -o '[0-9]*' | awk '{s+=$1} END {print s+0}')
    output_tokens=$(grep -o '"output":[0-9]*' "$json_file" 2>/dev/null | grep -o '[0-9]*' | awk '{s+=$1} END {print s+0}')
    jq -n --argjson m "${message_count:-0}" --argjson i "${input_tokens:-0}" --argjson o "${output_tokens:-0}" \
        '{messageCount: $m, inputTokens: $i, outputTokens: $o}'
}

monitor_progress() {
    local json_file="$1"
    local pid="$2"
    while kill -0 "$pid" 2>/dev/null; do
        sleep 10
        kill -0 "$pid" 2>/dev/null || break
        local last_line
        last_line=$(tail -n 5 "$json_file" 2>/dev/null | grep -o '"text":"[^"]*"' | tail -1 | sed 's/"text":"//;s/"$//' | head -c 200)
        local progress
        progress=$(extract_token_stats "$json_file" | jq --arg message "${last_line:-Processing...}" '. + {message: $message}')
        send_webhook "$(jq -n --argjson progress "$progress" '{type: "progress", progress: $progress}')" || true
    done
}
'''


def generate_callback_script(
    task_id: str,
    session_id: str,
    webhook_url: str,
    webhook_secret: str,
    prompt: str,
    branch_name: str,
    model: str,
    base_setup: BaseSetupConfig,
) -> str:
    """Render the one-shot script for a task invocation.

    Runs the base setup on the task branch, reports ``started``, runs
    ``opencode run`` on the prompt while posting progress every ten
    seconds, then reports ``completed`` with a summary and token stats or
    ``error`` with the exit code.
    """
    escaped_prompt = escape_for_double_quotes(prompt)
    header = f'''#!/bin/bash
set -uo pipefail
exec > >(tee -a {SANDBOX_LOG}) 2>&1

WEBHOOK_URL="{webhook_url}"
WEBHOOK_SECRET="{webhook_secret}"
SESSION_ID="{session_id}"
TASK_ID="{task_id}"
BRANCH_NAME="{branch_name}"
'''
    run = f'''
send_webhook "$(jq -n --arg message "Sprite setup complete, running opencode" '{{type: "started", message: $message}}')" || true

cd {REPO_DIR}
OPENCODE_JSON_FILE="/tmp/opencode-events.jsonl"
touch "$OPENCODE_JSON_FILE"

echo "Running opencode..."
opencode run --model "{model}" --format json "{escaped_prompt} !ALWAYS COMMIT YOUR WORK TO BRANCH {branch_name} AND PUSH WHEN YOU ARE DONE!" > "$OPENCODE_JSON_FILE" 2>&1 &
OPENCODE_PID=$!
'''
    finish = r'''
monitor_progress "$OPENCODE_JSON_FILE" "$OPENCODE_PID" &
MONITOR_PID=$!

wait "$OPENCODE_PID"
OPENCODE_EXIT_CODE=$?

kill "$MONITOR_PID" 2>/dev/null || true
wait "$MONITOR_PID" 2>/dev/null || true

echo "OpenCode exit code: $OPENCODE_EXIT_CODE"

SUMMARY=$(grep '"type":"text"' "$OPENCODE_JSON_FILE" | tail -3 | grep -o '"text":"[^"]*"' | sed 's/"text":"//;s/"$//' | tr '\n' ' ' | tail -c 500)
STATS_JSON=$(extract_token_stats "$OPENCODE_JSON_FILE")

if [ "$OPENCODE_EXIT_CODE" -eq 0 ]; then
    send_webhook "$(jq -n --arg summary "${SUMMARY:-Task completed successfully}" --arg branchName "$BRANCH_NAME" --argjson stats "$STATS_JSON" \
        '{type: "completed", summary: $summary, branchName: $branchName, stats: $stats}')" \
        || echo "WARNING: Webhook send failed, but task completed successfully"
else
    ERROR_CONTEXT="OpenCode exited with code $OPENCODE_EXIT_CODE"
    [ -n "$SUMMARY" ] && ERROR_CONTEXT="$ERROR_CONTEXT. Last output: $SUMMARY"
    send_webhook "$(jq -n --arg error "$ERROR_CONTEXT" '{type: "error", error: $error}')" \
        || echo "ERROR: Failed to send error webhook"
fi

echo "=== Execution Complete ==="
'''
    return '\n'.join([
        header,
        _CALLBACK_FUNCTIONS,
        _FAILURE_FUNCTIONS,
        generate_base_setup_script(base_setup),
        run,
        finish,
    ])
