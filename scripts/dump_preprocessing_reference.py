"""Write the prepared inputs for one image/prompt pair as .npy files.

Other implementations of the same preprocessing load these files and compare
against them: `token_ids.npy`, `image_token_positions.npy`, `image_input_idx.npy`
and `pixel_values.npy` ([n_tiles, 3, h, w] float32).
"""
import argparse
import json
import logging
import os
import time

import numpy as np

from nanovlm.config import build_config, load_config
from nanovlm.handle import PreprocessorHandle


def dump():
    parser = argparse.ArgumentParser(prog="Dump nanovlm preprocessing reference outputs")
    parser.add_argument("image", help="Image file to prepare")
    parser.add_argument("prompt", help="Prompt text")
    parser.add_argument("--tokenizer", default=None,
                        help="tokenizer.json or tokenizer directory, defaults to lm_tokenizer of the config")
    parser.add_argument("--config", default=None, help="Model config.json or a YAML preprocessing config")
    parser.add_argument("--mode", choices=["split", "fixed", "longest_edge"], default="split",
                        help="Image preparation policy")
    parser.add_argument("--resize_method", default=None, choices=["pil-bicubic", "torch-bicubic"])
    parser.add_argument("--output_dir", default="reference_outputs")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    overrides = {}
    if args.resize_method:
        overrides["resize_method"] = args.resize_method
    config = load_config(args.config, **overrides) if args.config else build_config(overrides)

    handle = PreprocessorHandle.open(args.tokenizer, config)
    if handle is None:
        raise SystemExit("Could not open the preprocessor, see the log for details")

    with handle:
        t0 = time.perf_counter()
        if args.mode == "fixed":
            image = handle.prepare_fixed_image(args.image)
            if image is None:
                raise SystemExit(f"Could not prepare {args.image}")
            tokens = handle.prepare_tokens(args.prompt, config.mp_image_token_length)
            pixel_values = image.pixel_values.data[None]
            grid = (1, 1)
        else:
            if args.mode == "split":
                image = handle.prepare_split_image(args.image)
            else:
                image = handle.prepare_longest_edge_image(args.image)
            if image is None:
                raise SystemExit(f"Could not prepare {args.image}")
            tokens = handle.prepare_image_tokens(args.prompt, image)
            pixel_values = image.pixel_values.data
            grid = (image.grid_rows, image.grid_cols)
        if tokens is None:
            raise SystemExit(f"Could not tokenize prompt {args.prompt!r}")
        logging.info(f"Prepared inputs in {time.perf_counter() - t0:0.3f}s")

        os.makedirs(args.output_dir, exist_ok=True)
        outputs = {
            "token_ids": tokens.token_ids.data,
            "image_token_positions": tokens.image_token_positions.data,
            "pixel_values": pixel_values,
        }
        if args.mode != "fixed":
            outputs["image_input_idx"] = tokens.image_input_idx()
        for name, array in outputs.items():
            path = os.path.join(args.output_dir, f"{name}.npy")
            np.save(path, array)
            logging.info(f"Wrote {name} {tuple(array.shape)} {array.dtype} to {path}")

        with open(os.path.join(args.output_dir, "meta.json"), "w") as f:
            json.dump(dict(
                image=args.image,
                prompt=args.prompt,
                mode=args.mode,
                grid=list(grid),
                resize_method=config.resize_method,
                prompt_layout=config.prompt_layout,
                tokens_per_tile=config.mp_image_token_length,
            ), f, indent=2)

        handle.release_tokenization_result(tokens)
        if args.mode == "fixed":
            handle.release_image_data(image)
        else:
            handle.release_multi_image_data(image)


if __name__ == '__main__':
    dump()
