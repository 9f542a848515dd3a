# templating

import re


from   typing import Any, Dict, List, Mapping, Optional, Sequence


from   .schema import Edge


PLACEHOLDER_PATTERN = re.compile(r"\$\{([^{}]+)\}")
SHELL_SPECIAL       = re.compile(r"([\"\\'$`])")


def render_template(template: str, inputs: Sequence[str], variables: Optional[Mapping[str, Any]] = None) -> str:
	"""
	Single pass substitution of placeholders.

	${N}    -> the N-th parent output (1-based), empty when out of range
	${name} -> the bound variable, left untouched when unbound so shell
	           expansions such as ${HOME} survive

	Substituted text is never scanned again.
	"""
	if not template:
		return ""
	variables = variables or {}

	def replace(match: re.Match) -> str:
		key = match.group(1).strip()
		if key.isdigit():
			index = int(key) - 1
			return inputs[index] if 0 <= index < len(inputs) else ""
		if key in variables:
			return str(variables[key])
		return match.group(0)

	return PLACEHOLDER_PATTERN.sub(replace, template)


def normalize_output(text: Optional[str]) -> str:
	if text is None:
		return ""
	return text.replace("\r\n", "\n").strip()


def parent_outputs(node_id: str, edges: Sequence[Edge], results: Mapping[str, str], skip_edges: Optional[set] = None) -> List[str]:
	"""Parent results in the order their edges were connected"""
	outputs = []
	for edge in edges:
		if edge.target != node_id:
			continue
		if skip_edges and edge.id in skip_edges:
			continue
		outputs.append(normalize_output(results.get(edge.source)))
	return outputs


def sanitize_for_shell(text: str) -> str:
	return SHELL_SPECIAL.sub(r"\\\1", text)


def template_variables(*scopes: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
	"""Merge binding scopes; later scopes win"""
	merged: Dict[str, Any] = {}
	for scope in scopes:
		if scope:
			merged.update(scope)
	return merged
