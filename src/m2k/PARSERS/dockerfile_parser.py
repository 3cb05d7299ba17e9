"""
Reads Dockerfiles far enough to check a build before it starts: which
ARGs are declared and which stages can be targeted.
"""
import json
import re
from typing import List, Set
from ..MODELS.dockerfile_ast import DockerfileAST, Instruction

_COMMENT = re.compile(r'^\s*#.*$', re.MULTILINE)
_CONTINUATION = re.compile(r'\\[ \t]*\r?\n')
_INSTRUCTION = re.compile(r'^[ \t]*([A-Za-z]+)[ \t]+(.*)$', re.MULTILINE)
# Instructions whose arguments are whitespace separated tokens
_TOKENIZED = ("ARG", "ENV", "LABEL", "FROM")


def _arguments(keyword: str, text: str) -> List[str]:
    if text.startswith('[') and text.endswith(']'):
        try:
            exec_form = json.loads(text)
        except json.JSONDecodeError:
            return [text]
        return [str(a) for a in exec_form] if isinstance(exec_form, list) else [text]
    if keyword in _TOKENIZED:
        return text.split()
    return [text]


class DockerfileParser:
    """
    Line-oriented Dockerfile reader. Comments are dropped and backslash
    continuations joined before instructions are matched; keywords are
    upper-cased.
    """

    def parse(self, dockerfile_path: str) -> DockerfileAST:
        with open(dockerfile_path, 'r') as f:
            return self.parse_from_string(f.read())

    def parse_from_string(self, content: str) -> DockerfileAST:
        content = _CONTINUATION.sub(' ', _COMMENT.sub('', content))

        instructions = []
        stage = -1
        for match in _INSTRUCTION.finditer(content):
            keyword = match.group(1).upper()
            if keyword == "FROM":
                stage += 1
            instructions.append(Instruction(
                instruction=keyword,
                arguments=_arguments(keyword, match.group(2).strip()),
                raw=match.group(0).strip(),
                stage=stage,
            ))
        return DockerfileAST(instructions=instructions)


def declared_build_args(ast: DockerfileAST) -> Set[str]:
    """Names declared with ARG in any stage, including global ARGs."""
    return {
        token.split('=', 1)[0]
        for inst in ast.find("ARG")
        for token in inst.arguments
    }


def stage_names(ast: DockerfileAST) -> List[str]:
    """Names given with 'FROM <image> AS <name>', in file order."""
    names = []
    for inst in ast.find("FROM"):
        tokens = [t.lower() for t in inst.arguments]
        if "as" in tokens[:-1]:
            names.append(inst.arguments[tokens.index("as") + 1])
    return names
