from setuptools import setup, find_packages

setup(
    name="network-monitor",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "aiohttp>=3.9.0",
        "asyncssh>=2.14.0",
        "docker>=7.0.0",
        "ping3>=4.0.4",
        "python-nmap>=0.7.1",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "network-monitor=network_monitor.cli:main",
        ],
    },
    python_requires=">=3.11",
)
