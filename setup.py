from setuptools import setup, find_packages

setup(
    name="docqa_agent",
    version="0.0.1",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "playwright==1.52.0",
        "pydantic",
        "langgraph",
        "openai",
        "httpx",
        "python-dotenv",
        "pyyaml",
        "html2text",
        "jinja2",
        "typing_extensions"
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    scripts=["docqa-agent.py"],
    python_requires='>=3.10',
)
