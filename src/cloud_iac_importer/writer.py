#!/usr/bin/env python3
"""
Writer / Serializer

Serializes a resolved resource graph as Terraform HCL configuration or as
a Terraform state document (format version 4).

Nodes are emitted in topological order over the non-demoted references,
ties broken by (type, local name), so the same graph always produces the
same bytes. Demoted references are written as literals so Terraform never
sees both directions of a cycle. Output is rendered into a buffer first;
the destination is only written once every node serialized successfully.

HCL can also be rendered as a module: the resources go to
`module-<name>/`, selected attributes become input variables and
`module.tf` calls the module with their current values.
"""

import io
import json
import logging
import math
import re
import uuid
from typing import Any, Dict, List, Optional, TextIO, Tuple

import networkx as nx
from jinja2 import Template

from .errors import SerializationError
from .graph import RESOLVED, UNRESOLVED, GraphNode, NodeID, Reference, ResourceGraph, sanitize_name

logger = logging.getLogger(__name__)

MODE_HCL = 'hcl'
MODE_STATE = 'state'
MODES = (MODE_HCL, MODE_STATE)

INDENT = '  '

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')

PROVIDER_TEMPLATE = Template("""terraform {
{% if terraform_version %}
  required_version = "{{ terraform_version }}"

{% endif %}
  required_providers {
    {{ provider_name }} = {
      source  = "hashicorp/{{ provider_name }}"
{% if provider_version %}
      version = "{{ provider_version }}"
{% endif %}
    }
  }
}

provider "{{ provider_name }}" {
{% for name, value in provider_config %}
  {{ name }} = {{ value }}
{% endfor %}
}
""", trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)

RESOURCE_TEMPLATE = Template("""{% if node.dependency_only %}
# dependency-only: {{ node.id }} was imported because other resources reference it
{% endif %}
resource "{{ node.terraform_type }}" "{{ node.local_name }}" {
{% for attribute in attributes %}
{% for comment in attribute.comments %}
  # {{ comment }}
{% endfor %}
  {{ attribute.name }} = {{ attribute.value }}
{% endfor %}
}
""", trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)

MODULE_TEMPLATE = Template("""module "{{ name }}" {
  source = "./{{ directory }}"
{% if variables %}

{% for variable in variables %}
  {{ variable.name }} = {{ variable.value }}
{% endfor %}
{% endif %}
}
""", trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)

VARIABLE_TEMPLATE = Template("""variable "{{ variable.name }}" {
  default = {{ variable.value }}
}
""", trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)

VariableMap = Dict[Tuple[NodeID, str], str]


def is_identifier(name: str) -> bool:
    return bool(_IDENTIFIER.match(name))


def hcl_string(value: str) -> str:
    """Quote a string for HCL, escaping template sequences"""
    escaped = []
    for char in value:
        if char == '\\':
            escaped.append('\\\\')
        elif char == '"':
            escaped.append('\\"')
        elif char == '\n':
            escaped.append('\\n')
        elif char == '\r':
            escaped.append('\\r')
        elif char == '\t':
            escaped.append('\\t')
        elif ord(char) < 0x20:
            escaped.append(f"\\u{ord(char):04x}")
        else:
            escaped.append(char)
    text = ''.join(escaped).replace('${', '$${').replace('%{', '%%{')
    return f'"{text}"'


def hcl_key(key: str) -> str:
    return key if _IDENTIFIER.match(key) else hcl_string(key)


def hcl_scalar(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"cannot render non-finite number {value!r} as HCL")
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return hcl_string(value)
    raise TypeError(f"cannot render {type(value).__name__} as HCL")


class Writer:
    """Renders a ResourceGraph as HCL or Terraform state"""

    def __init__(self,
                 interpolate: bool = True,
                 provider_block: bool = False,
                 provider_name: str = 'aws',
                 provider_config: Optional[Dict[str, Any]] = None,
                 terraform_version: str = '>=1.0',
                 provider_version: str = '>=5.0',
                 state_terraform_version: str = '1.5.7',
                 module_variables: Optional[Dict[str, List[str]]] = None):
        """
        Initialize the writer

        Args:
            interpolate: Render resolved references as expressions (HCL) and
                dependencies (state); when False every value is literal
            provider_block: Prepend terraform/provider blocks to HCL output
            provider_name: Provider used for the provider block and state addresses
            provider_config: Arguments of the provider block (region, profile, ...)
            terraform_version: required_version constraint
            provider_version: Provider version constraint
            state_terraform_version: terraform_version recorded in state output
            module_variables: Resource type -> top-level attributes exposed as
                module input variables by write_module
        """
        self.interpolate = interpolate
        self.provider_block = provider_block
        self.provider_name = provider_name
        self.provider_config = provider_config or {}
        self.terraform_version = terraform_version
        self.provider_version = provider_version
        self.state_terraform_version = state_terraform_version
        self.module_variables = module_variables or {}

    def emission_order(self, graph: ResourceGraph) -> List[GraphNode]:
        """Topological order over ordering references, ties broken by (type, local name)"""
        dag = nx.DiGraph()
        dag.add_nodes_from(graph.nodes)
        for ref in graph.references():
            if ref.orders:
                dag.add_edge(ref.target, ref.source)

        def tie_break(node_id):
            node = graph.nodes[node_id]
            return (node.terraform_type, node.local_name)

        try:
            return [graph.nodes[n] for n in nx.lexicographical_topological_sort(dag, key=tie_break)]
        except nx.NetworkXUnfeasible as e:
            raise SerializationError('graph', f"reference cycle left in emission graph: {e}") from e

    def write(self, graph: ResourceGraph, mode: str, out: TextIO):
        """
        Serialize the graph and write it to `out`

        Nothing is written unless every node serialized.

        Raises:
            SerializationError: Naming the node that failed
        """
        content = self.render(graph, mode)
        out.write(content)
        logger.info(f"Wrote {len(graph)} resources as {mode}")

    def render(self, graph: ResourceGraph, mode: str) -> str:
        if mode == MODE_HCL:
            return self._render_hcl(graph, self.emission_order(graph), include_provider=self.provider_block)
        if mode == MODE_STATE:
            return self._render_state(graph)
        raise ValueError(f"Unsupported output mode: {mode}")

    def write_split(self, graph: ResourceGraph) -> Dict[str, str]:
        """
        Render HCL as one document per resource category

        Returns:
            File name -> content; `provider.tf` holds the provider block when enabled
        """
        documents = self._render_categories(graph)
        if self.provider_block:
            documents['provider.tf'] = self._render_provider()
        return documents

    def write_module(self, graph: ResourceGraph, name: str) -> Dict[str, str]:
        """
        Render HCL as a module plus the root file calling it

        Attributes listed in `module_variables` become input variables
        defaulting to their imported value. Attributes holding an
        interpolated reference stay expressions.

        Args:
            graph: Resolved resource graph
            name: Module name; resources are written to `module-<name>/`

        Returns:
            Relative path -> content: `module.tf`, one
            `module-<name>/<category>.tf` per category,
            `module-<name>/variables.tf` when variables exist and
            `provider.tf` when the provider block is enabled
        """
        if not is_identifier(name):
            raise ValueError(f"Invalid module name: {name!r}")

        directory = f"module-{name}"
        variables = self.collect_variables(graph)
        rendered = []
        for (node_id, attribute), variable in sorted(variables.items(), key=lambda item: item[1]):
            value = graph.nodes[node_id].attributes[attribute]
            try:
                rendered.append({'name': variable, 'value': self._render_value(value, (attribute,), {}, [], 1)})
            except (TypeError, ValueError) as e:
                raise SerializationError(node_id, str(e)) from e

        documents = {
            f"{directory}/{file_name}": content
            for file_name, content in self._render_categories(graph, variables).items()
        }
        if rendered:
            documents[f"{directory}/variables.tf"] = '\n'.join(
                VARIABLE_TEMPLATE.render(variable=variable) for variable in rendered
            )
        documents['module.tf'] = MODULE_TEMPLATE.render(name=name, directory=directory, variables=rendered)
        if self.provider_block:
            documents['provider.tf'] = self._render_provider()

        logger.info(f"Rendered module {name} with {len(rendered)} variables")
        return documents

    def collect_variables(self, graph: ResourceGraph) -> VariableMap:
        """Map (node, attribute) to a unique variable name for every listed attribute"""
        variables: VariableMap = {}
        taken = set()
        for node in graph.sorted_nodes():
            for attribute in sorted(set(self.module_variables.get(node.terraform_type, []))):
                if attribute not in node.attributes:
                    continue
                if any(ref.path[0] == attribute and self._interpolates(ref) for ref in node.outgoing_refs):
                    logger.debug(f"Keeping {node.address}.{attribute} as a reference expression")
                    continue
                base = sanitize_name(f"{node.terraform_type}_{node.local_name}_{attribute}")
                variable = base
                suffix = 2
                while variable in taken:
                    variable = f"{base}_{suffix}"
                    suffix += 1
                taken.add(variable)
                variables[(node.id, attribute)] = variable
        return variables

    def _render_categories(self, graph: ResourceGraph, variables: Optional[VariableMap] = None) -> Dict[str, str]:
        documents = {}
        order = self.emission_order(graph)
        categories = sorted({node.category for node in order})
        for category in categories:
            nodes = [node for node in order if node.category == category]
            documents[f"{category}.tf"] = self._render_hcl(graph, nodes, include_provider=False,
                                                           variables=variables)
        return documents

    # HCL

    def _render_provider(self) -> str:
        config = [(hcl_key(k), hcl_scalar(v)) for k, v in sorted(self.provider_config.items())]
        return PROVIDER_TEMPLATE.render(
            terraform_version=self.terraform_version,
            provider_version=self.provider_version,
            provider_name=self.provider_name,
            provider_config=config,
        )

    def _render_hcl(self, graph: ResourceGraph, nodes: List[GraphNode], include_provider: bool,
                    variables: Optional[VariableMap] = None) -> str:
        buffer = io.StringIO()
        if include_provider:
            buffer.write(self._render_provider())
            if nodes:
                buffer.write('\n')

        for index, node in enumerate(nodes):
            if index:
                buffer.write('\n')
            try:
                buffer.write(self._render_node(graph, node, variables or {}))
            except SerializationError:
                raise
            except (TypeError, ValueError) as e:
                raise SerializationError(node.id, str(e)) from e
        return buffer.getvalue()

    def _render_node(self, graph: ResourceGraph, node: GraphNode, variables: VariableMap) -> str:
        refs = {ref.path: (ref, graph.nodes[ref.target].address if ref.target in graph else None)
                for ref in node.outgoing_refs}
        attributes = []
        for name, value in node.attributes.items():
            comments: List[str] = []
            if (node.id, name) in variables:
                rendered = f"var.{variables[(node.id, name)]}"
            else:
                rendered = self._render_value(value, (name,), refs, comments, 1)
            attributes.append({'name': hcl_key(name), 'value': rendered, 'comments': comments})
        return RESOURCE_TEMPLATE.render(node=node, attributes=attributes)

    def _render_value(self, value: Any, path: Tuple, refs: Dict[Tuple, Tuple[Reference, Optional[str]]],
                      comments: List[str], depth: int) -> str:
        if isinstance(value, dict):
            if not value:
                return '{}'
            inner = INDENT * (depth + 1)
            lines = ['{']
            for key in sorted(value):
                rendered = self._render_value(value[key], path + (key,), refs, comments, depth + 1)
                lines.append(f"{inner}{hcl_key(key)} = {rendered}")
            lines.append(f"{INDENT * depth}}}")
            return '\n'.join(lines)

        if isinstance(value, list):
            if not value:
                return '[]'
            items = [
                self._render_value(item, path + (index,), refs, comments, depth + 1)
                for index, item in enumerate(value)
            ]
            if all(isinstance(item, (str, int, float, bool)) for item in value):
                return f"[{', '.join(items)}]"
            inner = INDENT * (depth + 1)
            lines = ['['] + [f"{inner}{item}," for item in items] + [f"{INDENT * depth}]"]
            return '\n'.join(lines)

        if path in refs:
            ref, address = refs[path]
            return self._render_reference(ref, address, value, comments)
        return hcl_scalar(value)

    def _render_reference(self, ref: Reference, address: Optional[str], value: Any, comments: List[str]) -> str:
        if ref.status == UNRESOLVED:
            reason = ' '.join(str(ref.reason).split())
            comments.append(f"unresolved reference: {ref.target} ({reason})")
            return hcl_scalar(value)
        if self.interpolate and ref.demoted and not ref.is_self and address:
            comments.append(f"{address} kept literal to break a reference cycle")
            return hcl_scalar(value)
        if self._interpolates(ref) and address:
            return f"{address}.{ref.target_attribute}"
        return hcl_scalar(value)

    def _interpolates(self, ref: Reference) -> bool:
        """Whether `ref` is written as an expression"""
        return self.interpolate and ref.status == RESOLVED and not ref.demoted and not ref.is_self

    # State

    def _render_state(self, graph: ResourceGraph) -> str:
        order = self.emission_order(graph)
        resources = []
        for node in order:
            try:
                resources.append(self._state_resource(graph, node))
            except (TypeError, ValueError) as e:
                raise SerializationError(node.id, str(e)) from e

        lineage = uuid.uuid5(uuid.NAMESPACE_URL, '\n'.join(str(node_id) for node_id in sorted(graph.nodes)))
        state = {
            'version': 4,
            'terraform_version': self.state_terraform_version,
            'serial': 1,
            'lineage': str(lineage),
            'outputs': {},
            'resources': resources,
        }
        return json.dumps(state, indent=2, sort_keys=True, ensure_ascii=False) + '\n'

    def _state_resource(self, graph: ResourceGraph, node: GraphNode) -> Dict[str, Any]:
        attributes = dict(node.attributes)
        attributes['id'] = node.identity

        instance = {
            'schema_version': 0,
            'attributes': attributes,
            'sensitive_attributes': [],
        }
        if self.interpolate:
            dependencies = sorted({graph.nodes[ref.target].address for ref in node.outgoing_refs if ref.orders})
            if dependencies:
                instance['dependencies'] = dependencies

        json.dumps(attributes, allow_nan=False)

        return {
            'mode': 'managed',
            'type': node.terraform_type,
            'name': node.local_name,
            'provider': f'provider["registry.terraform.io/hashicorp/{self.provider_name}"]',
            'instances': [instance],
        }
