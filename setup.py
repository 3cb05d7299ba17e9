from setuptools import setup, find_namespace_packages

setup(
    name="m2k",
    version="0.1.0",
    description="Builds the images of an application manifest and deploys it as a tracked pipeline",
    packages=find_namespace_packages(where="src", include=["m2k", "m2k.*"]),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
        "dev": ["black>=23.0"],
    },
    entry_points={
        "console_scripts": [
            "m2k=m2k.CLI.main:main",
        ],
    },
)
