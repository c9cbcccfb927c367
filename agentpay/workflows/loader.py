"""Load workflow graphs and agent definitions from YAML or JSON files.

A file holds either a bare graph (top-level ``steps``) or a full agent
definition (top-level ``graph``).  A bare graph is wrapped in a local,
ACTIVE agent so it can be run directly.
"""

import json
from pathlib import Path
from typing import Union

import yaml

from agentpay.types import AgentDefinition, AgentStatus, Mandate, WorkflowGraph

_YAML_SUFFIXES = {".yaml", ".yml"}

LOCAL_TENANT = "local"
LOCAL_USER = "local-operator"


def load_document(path: Union[str, Path]) -> dict:
    """Parse a YAML or JSON file into a dict.

    Raises:
        FileNotFoundError: path does not exist
        ValueError: the file is not a mapping
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"File not found: {p}")
    text = p.read_text()
    raw = yaml.safe_load(text) if p.suffix.lower() in _YAML_SUFFIXES else json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError(f"{p}: expected a mapping at the top level, got {type(raw).__name__}")
    return raw


def load_agent(path: Union[str, Path]) -> AgentDefinition:
    raw = load_document(path)
    if "graph" in raw:
        return AgentDefinition.model_validate(raw)

    raw.setdefault("agent_id", Path(path).stem)
    graph = WorkflowGraph.model_validate(raw)
    return AgentDefinition(
        id=graph.agent_id,
        tenant_id=LOCAL_TENANT,
        created_by=LOCAL_USER,
        name=graph.agent_id,
        status=AgentStatus.ACTIVE,
        version=graph.version,
        graph=graph,
    )


def load_graph(path: Union[str, Path]) -> WorkflowGraph:
    return load_agent(path).graph


def load_mandate(path: Union[str, Path]) -> Mandate:
    return Mandate.model_validate(load_document(path))
