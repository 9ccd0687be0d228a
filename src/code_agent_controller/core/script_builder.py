"""Provision, execute and teardown scripts for single-host workspaces.

Scripts are lists of shell lines, run by the host's command executor in a
single ``bash`` invocation. Each workspace lives in ``<root>/<job_id>`` and
keeps its job spec in ``.agent-runrc.json`` and its environment in ``.env``.
"""

import json
from typing import Optional

from code_agent_controller.core.env_injector import format_env_file
from code_agent_controller.core.job_spec import JobSpec, merge_env
from code_agent_controller.core.toolchain import build_toolchain_commands_from_file, shell_escape
from code_agent_controller.errors import JobSpecError

JOB_SPEC_FILE = ".agent-runrc.json"

# Renders the job spec env overlaid with $payload in the same quoting as
# env_injector.format_env_file, for job specs that only exist on the host.
DOTENV_JQ = (
    r'''def dotenv_value: if . == "" then "\"\"" '''
    r'''elif test("[\\s\"']") then "\"" + (gsub("\\\\"; "\\\\") | gsub("\""; "\\\"") '''
    r'''| gsub("\n"; "\\n") | gsub("\r"; "\\r")) + "\"" else . end; '''
    r'''(.env // {}) + $payload | to_entries | sort_by(.key)[] | "\(.key)=\(.value | dotenv_value)"'''
)


def workspace_path(workspace_root: str, job_id: str) -> str:
    return f"{workspace_root.rstrip('/')}/{job_id}"


def build_provision_script(
    job_id: str,
    workspace_root: str,
    repo_url: Optional[str] = None,
    branch: Optional[str] = None,
    config_override: Optional[JobSpec] = None,
    env_payload: Optional[dict[str, str]] = None,
    allow_empty_workspace: bool = False,
) -> list[str]:
    """Build the script that creates a workspace from scratch.

    Order: clean the directory, clone (repo mode), write the job spec file,
    install the toolchain it names, write ``.env`` (job spec env overlaid by
    the payload, quoted so ``build_execute_script`` can source it), run the
    job spec's setup commands.

    Raises:
        JobSpecError: ``repo_url`` without ``branch``, or neither ``repo_url``
            nor ``allow_empty_workspace``.
    """
    path = shell_escape(workspace_path(workspace_root, job_id))
    script = ["set -eu", f"rm -rf {path}", f"mkdir -p {path}", f"cd {path}"]

    if repo_url:
        if not branch:
            raise JobSpecError("branch is required when repo_url is provided")
        script.append(
            f"git clone --depth 1 --branch {shell_escape(branch)} {shell_escape(repo_url)} ."
        )
    elif not allow_empty_workspace:
        raise JobSpecError("repo_url is required unless allow_empty_workspace is true")

    if config_override is not None:
        script.append(f"cat > {JOB_SPEC_FILE} <<'EOF'")
        script.append(config_override.to_json())
        script.append("EOF")
    script.append(
        f"if [ ! -f {JOB_SPEC_FILE} ]; then echo 'Missing {JOB_SPEC_FILE}' >&2; exit 1; fi"
    )

    script.extend(build_toolchain_commands_from_file(JOB_SPEC_FILE))

    if config_override is not None:
        env = merge_env(config_override.env, env_payload) or {}
        if env:
            script.append("cat > .env <<'EOF'")
            script.append(format_env_file(env))
            script.append("EOF")
        else:
            script.append("printf '' > .env")
    else:
        payload = shell_escape(json.dumps(env_payload or {}))
        script.append(
            f"jq -r --argjson payload {payload} {shell_escape(DOTENV_JQ)} {JOB_SPEC_FILE} > .env"
        )

    script.extend(
        [
            f"if jq -e '.setupCommands' {JOB_SPEC_FILE} >/dev/null; then",
            f"  jq -r '.setupCommands[]' {JOB_SPEC_FILE} | while read -r cmd; do",
            '    if [ -n "$cmd" ]; then eval "$cmd"; fi',
            "  done",
            "fi",
        ]
    )
    return script


def build_execute_script(workspace_root: str, job_id: str, command: str) -> list[str]:
    """Run ``command`` inside a workspace with its ``.env`` and toolchain loaded."""
    return [
        "set -eu",
        f"cd {shell_escape(workspace_path(workspace_root, job_id))}",
        "if [ -f .env ]; then set -o allexport; . ./.env; set +o allexport; fi",
        f"if [ -f {JOB_SPEC_FILE} ]; then",
        *(f"  {line}" for line in build_toolchain_commands_from_file(JOB_SPEC_FILE)),
        "fi",
        command,
    ]


def build_teardown_script(workspace_root: str, job_id: str) -> list[str]:
    return ["set -eu", f"rm -rf {shell_escape(workspace_path(workspace_root, job_id))}"]
