# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Analysis of samples produced by SciNimPy algorithms."""
