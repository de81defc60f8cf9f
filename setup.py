"""
Setup configuration for the Notification Dispatch Pipeline
Enables the project to be installed as a Python package
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the contents of README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8') if (this_directory / "README.md").exists() else ""

# Core dependencies
core_requirements = [
    'numpy>=1.24.0',
    'pandas>=2.0.0',
    'pyyaml>=6.0.0',
    'python-dotenv>=1.0.0',
    'colorlog>=6.7.0',
    'redis>=4.6.0',
]

# Optional dependencies
extras_require = {
    'dev': [
        'pytest>=7.4.0',
        'pytest-asyncio>=0.21.0',
        'pytest-cov>=4.1.0',
        'black>=23.7.0',
        'flake8>=6.0.0',
        'mypy>=1.4.0',
        'isort>=5.12.0',
    ],
}

# All extras combined
extras_require['all'] = list(set(sum(extras_require.values(), [])))

# Package metadata
setup(
    name='notification-dispatch',
    version='1.0.0',
    author='Notification Platform Team',
    author_email='notifications@example.com',
    description='Prioritized, deduplicated, rate-limited multi-channel notification dispatch',
    long_description=long_description,
    long_description_content_type='text/markdown',
    license='MIT',

    # Package discovery
    packages=find_packages(where='src'),
    package_dir={'': 'src'},

    # Include non-Python files
    include_package_data=True,
    package_data={
        'notification_dispatch.config': ['*.yaml', '*.yml'],
    },

    # Python version requirement
    python_requires='>=3.8',

    # Dependencies
    install_requires=core_requirements,
    extras_require=extras_require,

    # Classifiers for PyPI
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications',
        'Topic :: System :: Distributed Computing',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Framework :: AsyncIO',
        'Operating System :: OS Independent',
    ],

    keywords='notifications dispatch priority-queue deduplication rate-limiting asyncio',

    # Testing
    test_suite='tests',
    tests_require=[
        'pytest>=7.4.0',
        'pytest-asyncio>=0.21.0',
        'pytest-cov>=4.1.0',
    ],

    zip_safe=False,
)
