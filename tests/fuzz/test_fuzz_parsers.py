import random
import string

from m2k.errors import ManifestError
from m2k.PARSERS.dockerfile_parser import DockerfileParser, declared_build_args, stage_names
from m2k.PARSERS.manifest_parser import ManifestParser
from m2k.PIPELINE.naming import translate_pipeline_name
from m2k.REGISTRY.image_reference import ImageReference


def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))


def test_fuzz_dockerfile_parser():
    parser = DockerfileParser()
    for _ in range(100):
        ast = parser.parse_from_string(random_string(random.randint(0, 1000)))
        declared_build_args(ast)
        stage_names(ast)


def test_fuzz_manifest_parser():
    parser = ManifestParser({})
    for _ in range(100):
        try:
            parser.parse_from_string(random_string(random.randint(0, 1000)))
        except ManifestError:
            # Junk must be reported as a manifest problem, nothing else
            pass


def test_fuzz_pipeline_names():
    for _ in range(200):
        name = random_string(random.randint(0, 100))
        try:
            translated = translate_pipeline_name(name)
        except ValueError:
            continue
        assert 0 < len(translated) <= 63
        assert set(translated) <= set(string.ascii_lowercase + string.digits + "-")
        assert not translated.startswith("-") and not translated.endswith("-")


def test_fuzz_image_references():
    alphabet = string.ascii_lowercase + string.digits + ":/@.-_"
    for _ in range(200):
        text = ''.join(random.choice(alphabet) for _ in range(random.randint(0, 40)))
        try:
            ref = ImageReference.parse(text)
        except ValueError:
            continue
        assert ref.repository
        assert ref.tagged_name.startswith(ref.registry + "/")


def test_edge_cases_parsers():
    dockerfile_parser = DockerfileParser()

    # Empty string
    dockerfile_parser.parse_from_string("")

    # Only whitespace
    dockerfile_parser.parse_from_string("   \n\t  ")

    # Very long line
    dockerfile_parser.parse_from_string("RUN " + "a" * 10000)

    # Many line continuations
    dockerfile_parser.parse_from_string("RUN echo \\\n" * 100 + "hello")

    # Broken exec form falls back to the raw text
    ast = dockerfile_parser.parse_from_string('CMD ["python", ')
    assert ast.instructions[0].arguments == ['["python",']

    manifest_parser = ManifestParser({})
    manifest_parser.parse_from_string("---\n")
    manifest_parser.parse_from_string("build: {}\ndeploy: []\ndestroy: []\n")
