# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Node classes and expressions that make up SciNimPy model graphs."""
