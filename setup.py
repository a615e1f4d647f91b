"""
Billex - batch invoice generation engine
"""

from setuptools import setup, find_packages

setup(
    name="billex",
    version="0.1.0",
    description="Batch invoice generation engine with folio-safe provider calls",
    packages=find_packages(include=['billex', 'billex.*']),
    package_data={
        'billex': ['config/default_config.yaml'],
    },
    python_requires='>=3.9',
    install_requires=[
        'click',
        'httpx',
        'openpyxl',
        'pdfminer.six',
        'pydantic>=2',
        'pyyaml',
        'redis>=5',
        'sqlalchemy>=2',
    ],
    extras_require={
        'test': [
            'fakeredis[lua]',
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'billex=billex.cli:cli',
        ],
    },
)
