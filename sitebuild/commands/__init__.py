"""
sitebuild.commands - Long-running and remote parts of a build.

watch: file watching and task reruns.
dev: HTTP server with live reload.
deploy: FTP upload of the output tree.
"""
