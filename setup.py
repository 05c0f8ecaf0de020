import os.path

from setuptools import find_packages, setup

with open(os.path.join(os.path.dirname(__file__), 'README.md')) as f:
    LONG_DESCRIPTION = f.read()
    DESCRIPTION = LONG_DESCRIPTION.splitlines()[0].lstrip('#').strip()

setup(
    name='gitopsd',
    version='0.1.0',

    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type='text/markdown',
    keywords=['kubernetes', 'gitops', 'control-plane', 'python', 'k8s'],
    license='MIT',
    classifiers = [
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: Implementation :: CPython',
        'Topic :: System :: Systems Administration',
    ],

    zip_safe=True,
    packages=find_packages(include=['gitopsd', 'gitopsd.*']),
    include_package_data=True,
    entry_points={
        'console_scripts': [
            'gitopsd = gitopsd.cli:main',
        ],
    },

    python_requires='>=3.9',
    install_requires=[
        'typing_extensions',    # 0.20 MB
        'python-json-logger',   # 0.05 MB
        'iso8601',              # 0.07 MB
        'click',                # 0.60 MB
        'aiohttp',              # 7.80 MB
        'aiohttp>=3.9.0; python_version>="3.12"',
        'pyyaml',               # 0.90 MB
        'sqlalchemy[asyncio]>=2.0',  # 9.00 MB
        'aiosqlite',            # 0.05 MB
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'pytest-mock',
            'aresponses',
            'freezegun',
            'async-timeout',
        ],
    },
    package_data={"gitopsd": ["py.typed"]},
)
