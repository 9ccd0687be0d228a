"""Shell snippets that pin the Node toolchain on a host.

Node is installed through fnm and package managers through corepack. The
commands can be generated from an in-memory JobSpec or read the versions
from the job spec file already written on the host, so that the host copy
stays the source of truth when a workspace is reused.
"""

from code_agent_controller.core.job_spec import JobSpec

FNM_PREAMBLE = [
    'export HOME="${HOME:-/root}"',
    'export FNM_DIR="$HOME/.local/share/fnm"',
    'if [ -s "$FNM_DIR/fnm" ]; then export PATH="$FNM_DIR:$PATH"; fi',
    'eval "$(fnm env --shell bash)"',
]


def shell_escape(value: str) -> str:
    """Quote a value for POSIX sh using single quotes."""
    return "'" + value.replace("'", "'\"'\"'") + "'"


def build_toolchain_commands(spec: JobSpec) -> list[str]:
    """Toolchain commands for a literal job spec."""
    node = shell_escape(spec.runtime.node)
    commands = [
        *FNM_PREAMBLE,
        f"fnm install {node}",
        f"fnm use {node}",
        "corepack enable",
    ]
    if spec.runtime.pnpm:
        commands.append(f"corepack prepare pnpm@{shell_escape(spec.runtime.pnpm)} --activate")
    return commands


def build_toolchain_commands_from_file(path: str) -> list[str]:
    """Toolchain commands that read ``runtime.node``/``runtime.pnpm`` from a JSON file on the host."""
    return [
        *FNM_PREAMBLE,
        f"node_version=$(jq -r '.runtime.node // empty' {path})",
        "if [ -z \"$node_version\" ]; then echo 'Missing runtime.node' >&2; exit 1; fi",
        'fnm install "$node_version"',
        'fnm use "$node_version"',
        "corepack enable",
        f"pnpm_version=$(jq -r '.runtime.pnpm // empty' {path})",
        'if [ -n "$pnpm_version" ]; then corepack prepare "pnpm@$pnpm_version" --activate; fi',
    ]
