"""
Setup script for code-graph package.
"""

from setuptools import setup, find_packages

setup(
    name="code-graph",
    version="1.0.0",
    description="Cross-file relationship graphs of source repositories",
    author="",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main", "logger_config"],
    install_requires=[
        "flask>=3.0.0",
        "openai>=1.0.0",
        "tree-sitter>=0.23.0",
        "tree-sitter-language-pack>=0.7.0,<1.0",
        "networkx>=3.0",
        "tqdm>=4.65.0",
        "pyyaml>=6.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "elasticsearch": [
            "elasticsearch>=8.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "httpx>=0.23.0",
        ],
    },
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "code-graph=main:main",
        ],
    },
)
