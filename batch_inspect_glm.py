"""
Batch Ghoul2 GLM Inspector
Decodes every .glm model in a folder and writes a JSON summary per model
"""
import json
import sys
from pathlib import Path

from glmlib.debug_stub import DebugConsole
from glmlib.glm_parser import GlmError, load_glm, extract_renderable_data


class GLMBatchInspector:
    """Decodes GLM files and summarises their hierarchy and LODs"""

    # Default paths
    DEFAULT_INPUT = "input"
    DEFAULT_OUTPUT = "output"

    def __init__(self, input_folder=None, output_folder=None, lod_index=0):
        # Use defaults if not provided
        self.input_folder = Path(input_folder or self.DEFAULT_INPUT)
        self.output_folder = Path(output_folder or self.DEFAULT_OUTPUT)
        self.lod_index = lod_index

        self.output_folder.mkdir(parents=True, exist_ok=True)

        # Clean up output folder before processing
        self._cleanup_output_folder()

    def _cleanup_output_folder(self):
        """Remove existing summary files from output folder"""
        if not self.output_folder.exists():
            return

        summary_files = list(self.output_folder.glob('*_summary.json'))
        if summary_files:
            print(f"Cleaning up {len(summary_files)} existing summaries from output folder...")
            for summary_file in summary_files:
                try:
                    summary_file.unlink()
                except OSError as e:
                    print(f"  Warning: Could not delete {summary_file.name}: {e}")
            print("Output folder cleaned.")

    def summarize(self, model):
        """Build a JSON friendly summary of a decoded model"""
        summary = {
            "name": model.name,
            "anim_name": model.anim_name,
            "num_bones": model.num_bones,
            "hierarchy": [
                {
                    "name": entry.name,
                    "shader": entry.shader,
                    "flags": entry.flags,
                    "parent": entry.parent_index,
                    "children": list(entry.child_indices),
                }
                for entry in model.hierarchy
            ],
            "roots": [model.hierarchy[i].name for i in model.root_surfaces],
            "lods": [
                {
                    "surfaces": len(lod.surfaces),
                    "vertices": sum(len(s.vertices) for s in lod.surfaces),
                    "triangles": sum(len(s.triangles) for s in lod.surfaces),
                }
                for lod in model.lods
            ],
            "bbox": None,
        }

        if 0 <= self.lod_index < len(model.lods):
            _, bbox = extract_renderable_data(model, self.lod_index)
            if bbox is not None:
                summary["bbox"] = {
                    "lod": self.lod_index,
                    "min": [float(v) for v in bbox[0]],
                    "max": [float(v) for v in bbox[1]],
                }
        return summary

    def inspect_glm(self, glm_path, output_path):
        """Decode GLM file and write its summary"""
        print(f"Processing: {glm_path.name}")

        try:
            model = load_glm(glm_path)
        except GlmError as e:
            print(f"  [ERROR] {e.kind}: {e.message}")
            return False

        try:
            summary = self.summarize(model)
        except ValueError as e:
            print(f"  [ERROR] {e}")
            return False
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(summary, f, indent=2)

        print(f"  [OK] Saved: {output_path.name}")
        return True

    def batch_process(self):
        """Process all GLM files"""
        glm_files = sorted(self.input_folder.rglob('*.glm'))

        if not glm_files:
            print(f"No GLM files found in {self.input_folder}")
            return 0

        print(f"Found {len(glm_files)} GLM files")
        print()

        success_count = 0
        for idx, glm_file in enumerate(glm_files, 1):
            relative_path = glm_file.relative_to(self.input_folder)
            output_file = self.output_folder / f"{relative_path.stem}_summary.json"

            print(f"[{idx}/{len(glm_files)}] ", end='')
            if self.inspect_glm(glm_file, output_file):
                success_count += 1

        print(f"\n{'='*60}")
        print(f"Completed: {success_count}/{len(glm_files)} files")
        print(f"{'='*60}")
        return success_count


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description='Batch decode Ghoul2 GLM models')
    parser.add_argument('input_folder', nargs='?', default=None,
                       help=f'Folder containing GLM files (default: {GLMBatchInspector.DEFAULT_INPUT})')
    parser.add_argument('output_folder', nargs='?', default=None,
                       help=f'Folder to save JSON summaries (default: {GLMBatchInspector.DEFAULT_OUTPUT})')
    parser.add_argument('--lod', '-l', type=int, default=0,
                       help='LOD used for the bounding box (default: 0)')
    parser.add_argument('--verbose', '-v', action='store_true',
                       help='Print parser diagnostics')

    args = parser.parse_args(argv)
    DebugConsole.enabled = args.verbose

    inspector = GLMBatchInspector(args.input_folder, args.output_folder, args.lod)
    inspector.batch_process()


if __name__ == "__main__":
    if len(sys.argv) == 1:
        print("Ghoul2 GLM Batch Inspector")
        print("="*60)
        print(f"Default paths:")
        print(f"  Input:    {GLMBatchInspector.DEFAULT_INPUT}")
        print(f"  Output:   {GLMBatchInspector.DEFAULT_OUTPUT}")
        print()

        use_defaults = input("Use default paths? (Y/n): ").strip().lower()

        if use_defaults == 'n':
            input_folder = input("Enter input folder: ").strip('"')
            output_folder = input("Enter output folder: ").strip('"')
            inspector = GLMBatchInspector(input_folder, output_folder)
        else:
            inspector = GLMBatchInspector()

        inspector.batch_process()
    else:
        main()
