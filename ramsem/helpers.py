# -*- coding: utf-8 -*-
# Internal helper functions (not exported!)
import torch


def dup_idx(n):
    """
    Constructs index vector for transforming a vech vector
    into a vec vector to create an n*n symmetric matrix
    from the vech vector.
    tensor.index_select(0, idx).view(3,3)
    :param n: size of the resulting square matrix
    :return: array containing the indices
    """
    idx = []
    for row in range(n):
        for col in range(n):
            if row == col:
                idx.append(int(row * (2 * n - row + 1) / 2))
            if row < col:
                idx.append(int(row * (2 * n - row + 1) / 2) + col - row)
            if row > col:
                idx.append(int(col * (2 * n - col + 1) / 2) + row - col)
    return idx


def vech_idx(n):
    """
    Row and column indices of the non-duplicated elements of an n*n
    symmetric matrix, in the order used by dup_idx and Gamma_ADF
    :param n: size of the square matrix
    :return: tuple of two index lists
    """
    rows = [p for p in range(n) for _ in range(p, n)]
    cols = [q for p in range(n) for q in range(p, n)]
    return rows, cols


def symmetrize(x: torch.Tensor):
    """Removes floating point asymmetry from a matrix that should be symmetric"""
    return x.add(x.t()).div(2)
