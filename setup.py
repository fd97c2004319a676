from setuptools import setup

setup(
    name='diego_enabler',
    version='1.0.1',
    description='Inspect and toggle Diego support of Cloud Foundry apps',
    long_description=open('README.md').read().strip(),
    long_description_content_type="text/markdown",
    license='Apache License Version 2.0',
    py_modules=['diego_enabler'],
    install_requires=['requests>=2.22.0'],
    extras_require={'test': ['pytest', 'responses', 'coverage']},
    entry_points={'console_scripts': ['diego-enabler=diego_enabler:cli']},
)
