from setuptools import find_packages, setup

setup(
    name='serial-ingest-bridge',
    version='1.0.0',
    description='Serial (newline-delimited JSON) -> HTTP ingestion bridge daemon',
    author='isantolin',
    author_email='',
    packages=find_packages(include=['serialingest', 'serialingest.*']),
    python_requires='>=3.11',
    install_requires=[
        'pyserial',
        'pyserial-asyncio-fast',
        'httpx',
        'tenacity',
        'transitions',
        'msgspec',
        'marshmallow>=3.13',
        'prometheus-client',
        'uvloop',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'serialingest=serialingest.daemon:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
)
