from setuptools import setup, find_packages

setup(
    name="chainstate",
    version="1.0.0",
    description="chainstate - Durable discovery-graph state with token-bounded recovery and multi-agent coordination",
    author="Your Name",
    packages=find_packages(include=["chainstate", "chainstate.*"]),
    include_package_data=True,
    install_requires=[
        # Core data modeling and validation
        "pydantic>=2.0.0",

        # Environment variables (CLI state root)
        "python-dotenv>=1.0.0",

        # Graph analysis (chain validation, metrics, exports)
        "networkx>=3.0",

        # CLI and rich output
        "typer>=0.9.0",
        "rich>=13.0.0",

        # YAML graph export
        "pyyaml>=6.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "chainstate = chainstate.app.main:main",
        ],
    },
    python_requires=">=3.11",
    package_dir={"": "."},
)
