from setuptools import setup, find_packages

def parse_requirements(requirements):
    with open(requirements) as f:
        return [l.strip('\n') for l in f if l.strip('\n') and not l.startswith('#')]

requirements = parse_requirements("requirements.txt")

setup(
    name='buddylynk_realtime',
    version='0.1.0',
    python_requires='>=3.10',
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={
        "buddylynk_backend.exceptions": ["error_registry.yaml"],
    },
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "buddylynk=buddylynk_cli.cli:cli",
        ],
    }
)
